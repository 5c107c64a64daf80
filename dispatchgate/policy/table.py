"""
Declarative tool catalog.

Every other component (authorization, transition validation, requirement
gates, the HTTP router and the drift detector) reads this table; nothing
here has behavior beyond lookups and export.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple, Type

from pydantic import BaseModel

from dispatchgate.policy import roles as R
from dispatchgate.policy import schemas as S
from dispatchgate.policy.states import NON_TERMINAL_STATES, TicketState, states


GATE_INTAKE = "intake"
GATE_RISK = "risk"
GATE_CLOSEOUT = "closeout"
GATE_EVIDENCE_REFS = "evidence_refs"
GATE_EVIDENCE_MUTABLE = "evidence_mutable"
GATE_CHANGE_REQUEST = "change_request"


@dataclass(frozen=True)
class BypassRule:
    mode_field: str
    required_mode: str
    required_fields: Tuple[str, ...]
    require_actor_identity: bool = True
    # Source states that are only legal when the bypass mode is claimed.
    bypass_only_states: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class GateRule:
    gate: str
    # None applies the gate to every resolved next state.
    when_next_state: Optional[FrozenSet[str]] = None

    def applies_to(self, next_state: Optional[str]) -> bool:
        return self.when_next_state is None or next_state in self.when_next_state


@dataclass(frozen=True)
class ToolPolicy:
    tool_name: str
    method: str
    route: str
    allowed_roles: FrozenSet[str]
    payload_model: Type[BaseModel]
    mutating: bool = True
    allowed_from_states: Optional[FrozenSet[str]] = None
    resulting_state: Optional[str] = None
    alternate_states: Tuple[str, ...] = ()
    outcome_field: Optional[str] = None
    outcome_states: Mapping[str, str] = field(default_factory=dict)
    idempotency_required: bool = True
    bypass: Optional[BypassRule] = None
    override: bool = False
    creates_ticket: bool = False
    ticket_scoped: bool = True
    requirement_gates: Tuple[GateRule, ...] = ()
    outbox_event: Optional[str] = None

    @property
    def declared_results(self) -> Tuple[str, ...]:
        if self.resulting_state is None:
            return ()
        return (self.resulting_state, *self.alternate_states)


# audit is a read-only role; customer reads its own ticket but not the evidence list.
_TICKET_READERS = frozenset(
    {R.DISPATCHER, R.AGENT, R.CUSTOMER, R.TECHNICIAN, R.QA, R.APPROVER, R.FINANCE, R.AUDIT}
)
_EVIDENCE_READERS = _TICKET_READERS - {R.CUSTOMER}


def _p(**kwargs: Any) -> ToolPolicy:
    return ToolPolicy(**kwargs)


_POLICIES: List[ToolPolicy] = [
    _p(
        tool_name="ticket.create",
        method="POST",
        route="/tickets",
        allowed_roles=frozenset({R.DISPATCHER, R.AGENT}),
        payload_model=S.TicketCreatePayload,
        resulting_state=TicketState.NEW.value,
        creates_ticket=True,
        ticket_scoped=False,
    ),
    _p(
        tool_name="ticket.blind_intake",
        method="POST",
        route="/tickets/intake",
        allowed_roles=frozenset({R.DISPATCHER, R.AGENT}),
        payload_model=S.BlindIntakePayload,
        resulting_state=TicketState.TRIAGED.value,
        alternate_states=(TicketState.READY_TO_SCHEDULE.value,),
        creates_ticket=True,
        ticket_scoped=False,
        requirement_gates=(GateRule(GATE_INTAKE),),
    ),
    _p(
        tool_name="ticket.get",
        method="GET",
        route="/tickets/{ticket_id}",
        allowed_roles=_TICKET_READERS,
        payload_model=S.EmptyPayload,
        mutating=False,
        idempotency_required=False,
    ),
    _p(
        tool_name="ticket.timeline",
        method="GET",
        route="/tickets/{ticket_id}/timeline",
        allowed_roles=_TICKET_READERS,
        payload_model=S.EmptyPayload,
        mutating=False,
        idempotency_required=False,
    ),
    _p(
        tool_name="ticket.triage",
        method="POST",
        route="/tickets/{ticket_id}/triage",
        allowed_roles=frozenset({R.DISPATCHER, R.AGENT}),
        payload_model=S.TriagePayload,
        allowed_from_states=states(TicketState.NEW, TicketState.NEEDS_INFO, TicketState.TRIAGED),
        resulting_state=TicketState.TRIAGED.value,
        alternate_states=(TicketState.READY_TO_SCHEDULE.value, TicketState.APPROVAL_REQUIRED.value),
        outcome_field="workflow_outcome",
        outcome_states=MappingProxyType(
            {
                "TRIAGED": TicketState.TRIAGED.value,
                "READY_TO_SCHEDULE": TicketState.READY_TO_SCHEDULE.value,
                "APPROVAL_REQUIRED": TicketState.APPROVAL_REQUIRED.value,
            }
        ),
        requirement_gates=(GateRule(GATE_INTAKE, states(TicketState.READY_TO_SCHEDULE)),),
    ),
    _p(
        tool_name="approval.decide",
        method="POST",
        route="/tickets/{ticket_id}/approval/decide",
        allowed_roles=frozenset({R.APPROVER, R.DISPATCHER}),
        payload_model=S.ApprovalDecidePayload,
        allowed_from_states=states(TicketState.APPROVAL_REQUIRED),
        resulting_state=TicketState.READY_TO_SCHEDULE.value,
        # A decision on a technician change request resumes the work instead.
        alternate_states=(TicketState.TRIAGED.value, TicketState.IN_PROGRESS.value),
        outcome_field="decision",
        outcome_states=MappingProxyType(
            {
                "APPROVED": TicketState.READY_TO_SCHEDULE.value,
                "DENIED": TicketState.TRIAGED.value,
            }
        ),
        requirement_gates=(GateRule(GATE_CHANGE_REQUEST),),
    ),
    _p(
        tool_name="schedule.propose",
        method="POST",
        route="/tickets/{ticket_id}/schedule/propose",
        allowed_roles=frozenset({R.DISPATCHER, R.AGENT}),
        payload_model=S.ScheduleProposePayload,
        allowed_from_states=states(TicketState.READY_TO_SCHEDULE),
        resulting_state=TicketState.SCHEDULE_PROPOSED.value,
    ),
    _p(
        tool_name="schedule.confirm",
        method="POST",
        route="/tickets/{ticket_id}/schedule/confirm",
        allowed_roles=frozenset({R.DISPATCHER}),
        payload_model=S.ScheduleConfirmPayload,
        allowed_from_states=states(TicketState.SCHEDULE_PROPOSED),
        resulting_state=TicketState.SCHEDULED.value,
        outbox_event="schedule.confirm.sms",
    ),
    _p(
        tool_name="assignment.dispatch",
        method="POST",
        route="/tickets/{ticket_id}/assignment/dispatch",
        allowed_roles=frozenset({R.DISPATCHER}),
        payload_model=S.AssignmentDispatchPayload,
        allowed_from_states=states(TicketState.SCHEDULED, TicketState.TRIAGED),
        resulting_state=TicketState.DISPATCHED.value,
        bypass=BypassRule(
            mode_field="dispatch_mode",
            required_mode="EMERGENCY_BYPASS",
            required_fields=("dispatch_rationale", "dispatch_confirmation"),
            require_actor_identity=True,
            bypass_only_states=states(TicketState.TRIAGED),
        ),
        outbox_event="assignment.dispatch.sms",
    ),
    _p(
        tool_name="tech.check_in",
        method="POST",
        route="/tickets/{ticket_id}/tech/check-in",
        allowed_roles=frozenset({R.TECHNICIAN, R.DISPATCHER}),
        payload_model=S.TechCheckInPayload,
        allowed_from_states=states(TicketState.DISPATCHED),
        resulting_state=TicketState.IN_PROGRESS.value,
    ),
    _p(
        tool_name="closeout.add_evidence",
        method="POST",
        route="/tickets/{ticket_id}/evidence",
        allowed_roles=frozenset({R.DISPATCHER, R.AGENT, R.TECHNICIAN}),
        payload_model=S.AddEvidencePayload,
        requirement_gates=(GateRule(GATE_EVIDENCE_MUTABLE),),
    ),
    _p(
        tool_name="closeout.list_evidence",
        method="GET",
        route="/tickets/{ticket_id}/evidence",
        allowed_roles=_EVIDENCE_READERS,
        payload_model=S.EmptyPayload,
        mutating=False,
        idempotency_required=False,
    ),
    _p(
        tool_name="closeout.evidence_exception",
        method="POST",
        route="/tickets/{ticket_id}/closeout/evidence-exception",
        allowed_roles=frozenset({R.DISPATCHER, R.QA, R.APPROVER}),
        payload_model=S.EvidenceExceptionPayload,
        allowed_from_states=states(
            TicketState.IN_PROGRESS,
            TicketState.COMPLETED_PENDING_VERIFICATION,
            TicketState.VERIFIED,
            TicketState.INVOICED,
        ),
    ),
    _p(
        tool_name="closeout.candidate",
        method="POST",
        route="/tickets/{ticket_id}/closeout/candidate",
        allowed_roles=frozenset({R.AGENT, R.DISPATCHER, R.TECHNICIAN}),
        payload_model=S.CompletionPayload,
        allowed_from_states=states(TicketState.IN_PROGRESS),
        resulting_state=TicketState.COMPLETED_PENDING_VERIFICATION.value,
        requirement_gates=(GateRule(GATE_RISK), GateRule(GATE_CLOSEOUT), GateRule(GATE_EVIDENCE_REFS)),
    ),
    _p(
        tool_name="tech.complete",
        method="POST",
        route="/tickets/{ticket_id}/tech/complete",
        allowed_roles=frozenset({R.TECHNICIAN, R.DISPATCHER}),
        payload_model=S.CompletionPayload,
        allowed_from_states=states(TicketState.IN_PROGRESS),
        resulting_state=TicketState.COMPLETED_PENDING_VERIFICATION.value,
        requirement_gates=(GateRule(GATE_CLOSEOUT), GateRule(GATE_EVIDENCE_REFS)),
    ),
    _p(
        tool_name="tech.request_change",
        method="POST",
        route="/tickets/{ticket_id}/tech/request-change",
        allowed_roles=frozenset({R.TECHNICIAN}),
        payload_model=S.RequestChangePayload,
        allowed_from_states=states(TicketState.IN_PROGRESS),
        resulting_state=TicketState.APPROVAL_REQUIRED.value,
        requirement_gates=(GateRule(GATE_EVIDENCE_REFS),),
    ),
    _p(
        tool_name="qa.verify",
        method="POST",
        route="/tickets/{ticket_id}/qa/verify",
        allowed_roles=frozenset({R.QA, R.DISPATCHER}),
        payload_model=S.QaVerifyPayload,
        allowed_from_states=states(TicketState.COMPLETED_PENDING_VERIFICATION),
        resulting_state=TicketState.VERIFIED.value,
        alternate_states=(TicketState.IN_PROGRESS.value,),
        outcome_field="result",
        outcome_states=MappingProxyType(
            {
                "PASS": TicketState.VERIFIED.value,
                "FAIL": TicketState.IN_PROGRESS.value,
            }
        ),
        requirement_gates=(GateRule(GATE_EVIDENCE_REFS, states(TicketState.VERIFIED)),),
    ),
    _p(
        tool_name="billing.generate_invoice",
        method="POST",
        route="/tickets/{ticket_id}/billing/generate-invoice",
        allowed_roles=frozenset({R.FINANCE}),
        payload_model=S.GenerateInvoicePayload,
        allowed_from_states=states(TicketState.VERIFIED),
        resulting_state=TicketState.INVOICED.value,
    ),
    _p(
        tool_name="ticket.close",
        method="POST",
        route="/tickets/{ticket_id}/close",
        allowed_roles=frozenset({R.DISPATCHER, R.FINANCE, R.APPROVER}),
        payload_model=S.TicketClosePayload,
        allowed_from_states=states(TicketState.VERIFIED, TicketState.INVOICED),
        resulting_state=TicketState.CLOSED.value,
        requirement_gates=(GateRule(GATE_EVIDENCE_REFS),),
    ),
    _p(
        tool_name="reopen_after_verification",
        method="POST",
        route="/tickets/{ticket_id}/reopen",
        allowed_roles=frozenset({R.DISPATCHER, R.QA}),
        payload_model=S.ReasonPayload,
        allowed_from_states=states(TicketState.VERIFIED, TicketState.INVOICED),
        resulting_state=TicketState.IN_PROGRESS.value,
    ),
    _p(
        tool_name="ticket.cancel",
        method="POST",
        route="/tickets/{ticket_id}/cancel",
        allowed_roles=frozenset({R.DISPATCHER, R.APPROVER, R.FINANCE}),
        payload_model=S.ReasonPayload,
        allowed_from_states=NON_TERMINAL_STATES,
        resulting_state=TicketState.CANCELLED.value,
    ),
    _p(
        tool_name="ticket.force_close",
        method="POST",
        route="/tickets/{ticket_id}/force-close",
        allowed_roles=frozenset({R.DISPATCHER, R.APPROVER}),
        payload_model=S.ForceClosePayload,
        allowed_from_states=states(TicketState.COMPLETED_PENDING_VERIFICATION),
        resulting_state=TicketState.CLOSED.value,
        override=True,
    ),
    _p(
        tool_name="dispatch.force_hold",
        method="POST",
        route="/tickets/{ticket_id}/force-hold",
        allowed_roles=frozenset({R.DISPATCHER}),
        payload_model=S.ReasonPayload,
        allowed_from_states=states(TicketState.DISPATCHED, TicketState.ON_SITE, TicketState.IN_PROGRESS),
        resulting_state=TicketState.ON_HOLD.value,
        override=True,
    ),
    _p(
        tool_name="dispatch.force_unassign",
        method="POST",
        route="/tickets/{ticket_id}/force-unassign",
        allowed_roles=frozenset({R.DISPATCHER}),
        payload_model=S.ReasonPayload,
        allowed_from_states=states(
            TicketState.DISPATCHED,
            TicketState.ON_SITE,
            TicketState.IN_PROGRESS,
            TicketState.ON_HOLD,
        ),
        resulting_state=TicketState.SCHEDULED.value,
        override=True,
    ),
    _p(
        tool_name="outbox.replay",
        method="POST",
        route="/outbox/replay",
        allowed_roles=frozenset({R.DISPATCHER, R.FINANCE, R.ADMIN, R.SYSTEM}),
        payload_model=S.OutboxReplayPayload,
        ticket_scoped=False,
    ),
]


TOOL_POLICIES: Mapping[str, ToolPolicy] = MappingProxyType({policy.tool_name: policy for policy in _POLICIES})


def get_tool_policy(tool_name: str) -> Optional[ToolPolicy]:
    return TOOL_POLICIES.get(str(tool_name or "").strip())


def transition_edges(
    policies: Optional[Mapping[str, ToolPolicy]] = None,
    *,
    include_overrides: bool = True,
    only_overrides: bool = False,
) -> Set[Tuple[Optional[str], str]]:
    """
    The from->to edges the table implies. Creation tools contribute edges from
    ``None``; self-edges are omitted because they never reach the transition log.
    """
    edges: Set[Tuple[Optional[str], str]] = set()
    for policy in (policies or TOOL_POLICIES).values():
        if not policy.declared_results:
            continue
        if policy.override and not include_overrides:
            continue
        if only_overrides and not policy.override:
            continue
        if policy.creates_ticket:
            sources: List[Optional[str]] = [None]
        else:
            sources = sorted(policy.allowed_from_states or NON_TERMINAL_STATES)
        for source in sources:
            for target in policy.declared_results:
                if source != target:
                    edges.add((source, target))
    return edges


def export_policy_table() -> Dict[str, Dict[str, Any]]:
    exported: Dict[str, Dict[str, Any]] = {}
    for name in sorted(TOOL_POLICIES):
        policy = TOOL_POLICIES[name]
        bypass = None
        if policy.bypass is not None:
            bypass = {
                "mode_field": policy.bypass.mode_field,
                "required_mode": policy.bypass.required_mode,
                "required_fields": list(policy.bypass.required_fields),
                "require_actor_identity": policy.bypass.require_actor_identity,
                "bypass_only_states": sorted(policy.bypass.bypass_only_states),
            }
        exported[name] = {
            "method": policy.method,
            "route": policy.route,
            "mutating": policy.mutating,
            "roles": sorted(policy.allowed_roles),
            "source_states": sorted(policy.allowed_from_states) if policy.allowed_from_states is not None else None,
            "resulting_state": policy.resulting_state,
            "alternate_states": list(policy.alternate_states),
            "outcome_field": policy.outcome_field,
            "idempotency_required": policy.idempotency_required,
            "payload_schema": policy.payload_model.model_json_schema(),
            "bypass": bypass,
            "override": policy.override,
            "requirement_gates": [rule.gate for rule in policy.requirement_gates],
        }
    return exported
