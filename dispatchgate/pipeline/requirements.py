from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from dispatchgate.config import DispatchSettings
from dispatchgate.errors import ConflictError
from dispatchgate.gates import intake as intake_gate
from dispatchgate.gates.closeout import (
    IncidentTemplateSet,
    enforce_closeout_requirements,
    evaluate_closeout_requirements,
)
from dispatchgate.gates.evidence import EvidenceReference, EvidenceReferenceVerifier
from dispatchgate.gates.risk import RiskRuleSet, classify_risk, enforce_risk_gate
from dispatchgate.pipeline.context import ToolContext
from dispatchgate.policy.states import TERMINAL_STATES, TicketState
from dispatchgate.policy.table import (
    GATE_CHANGE_REQUEST,
    GATE_CLOSEOUT,
    GATE_EVIDENCE_MUTABLE,
    GATE_EVIDENCE_REFS,
    GATE_INTAKE,
    GATE_RISK,
)
from dispatchgate.tickets.repository import TicketRepository
from dispatchgate.utils.clock import parse_iso, to_iso, utc_now


logger = logging.getLogger(__name__)


class RequirementGates:
    """
    Runs the requirement gates a tool declares, in declaration order.

    A failing gate raises a DispatchError; passing gates leave facts on the
    context for the handler and the audit row.
    """

    def __init__(
        self,
        settings: DispatchSettings,
        tickets: TicketRepository,
        *,
        templates: IncidentTemplateSet,
        risk_rules: RiskRuleSet,
        verifier: EvidenceReferenceVerifier,
    ):
        self._settings = settings
        self._tickets = tickets
        self._templates = templates
        self._risk_rules = risk_rules
        self._verifier = verifier
        self._gates: Dict[str, Callable[[ToolContext], None]] = {
            GATE_INTAKE: self._intake,
            GATE_RISK: self._risk,
            GATE_CLOSEOUT: self._closeout,
            GATE_EVIDENCE_REFS: self._evidence_refs,
            GATE_EVIDENCE_MUTABLE: self._evidence_mutable,
            GATE_CHANGE_REQUEST: self._change_request,
        }

    def evaluate(self, ctx: ToolContext) -> None:
        for rule in ctx.policy.requirement_gates:
            if not rule.applies_to(ctx.next_state):
                continue
            self._gates[rule.gate](ctx)

    def _merged_ticket(self, ctx: ToolContext) -> Dict[str, Any]:
        merged = dict(ctx.ticket or {})
        for key in ("incident_type", "priority", "nte_cents", "summary"):
            if ctx.payload.get(key) is not None:
                merged[key] = ctx.payload[key]
        return merged

    def _intake(self, ctx: ToolContext) -> None:
        if ctx.policy.creates_ticket:
            self._blind_intake(ctx)
            return
        ticket = ctx.ticket or {}
        if not ticket.get("identity_signature"):
            # Only blind-intake tickets carry confidence gates.
            return
        payload = ctx.payload
        assessment = intake_gate.assess_intake(
            self._settings,
            identity_confidence=_first_not_none(payload.get("identity_confidence"), ticket.get("identity_confidence")),
            classification_confidence=_first_not_none(
                payload.get("classification_confidence"), ticket.get("classification_confidence")
            ),
            sop_handoff_acknowledged=bool(
                _first_not_none(payload.get("sop_handoff_acknowledged"), ticket.get("sop_handoff_acknowledged"))
            ),
        )
        ctx.facts["intake"] = assessment.to_dict()
        intake_gate.enforce_ready_to_schedule(self._settings, assessment)

    def _blind_intake(self, ctx: ToolContext) -> None:
        signature = intake_gate.identity_signature(ctx.payload)
        since = to_iso(utc_now() - timedelta(hours=self._settings.intake_dedupe_window_hours))
        duplicate = self._tickets.find_open_duplicate(signature, since=since)
        if duplicate is not None:
            logger.info("blind intake matches open ticket %s", duplicate, extra={"tool_name": ctx.policy.tool_name})
            raise intake_gate.duplicate_intake(duplicate)
        assessment = intake_gate.assess_intake(
            self._settings,
            identity_confidence=ctx.payload.get("identity_confidence"),
            classification_confidence=ctx.payload.get("classification_confidence"),
            sop_handoff_acknowledged=bool(ctx.payload.get("sop_handoff_acknowledged")),
        )
        ctx.facts["identity_signature"] = signature
        ctx.facts["intake"] = assessment.to_dict()
        promoted = TicketState.READY_TO_SCHEDULE.value
        if assessment.ready_to_schedule and promoted in ctx.policy.declared_results:
            ctx.next_state = promoted

    def _risk(self, ctx: ToolContext) -> None:
        profile = classify_risk(self._risk_rules, self._merged_ticket(ctx))
        ctx.facts["risk_profile"] = profile.to_dict()
        if profile.blocks_automation:
            logger.warning(
                "automation blocked by risk rules %s",
                ",".join(profile.rule_ids),
                extra={"ticket_id": ctx.ticket_id, "tool_name": ctx.policy.tool_name},
            )
        enforce_risk_gate(profile)

    def _closeout(self, ctx: ToolContext) -> None:
        ticket = ctx.ticket or {}
        checklist = dict(ticket.get("checklist_status") or {})
        checklist.update(ctx.payload.get("checklist_status") or {})
        evaluation = evaluate_closeout_requirements(
            self._templates,
            ticket.get("incident_type"),
            self._tickets.list_evidence(ticket["id"]),
            checklist,
            no_signature_reason=ctx.payload.get("no_signature_reason"),
            waived_evidence_keys=_active_waivers(ticket),
        )
        ctx.facts["closeout"] = evaluation.to_dict()
        enforce_closeout_requirements(evaluation)

    def _evidence_refs(self, ctx: ToolContext) -> None:
        items = self._tickets.list_evidence(ctx.ticket["id"])
        checksums = {item["uri"]: item.get("checksum") for item in items}
        references: List[EvidenceReference] = [
            EvidenceReference(uri=item["uri"], checksum=item.get("checksum")) for item in items
        ]
        for uri in ctx.payload.get("evidence_refs") or []:
            references.append(EvidenceReference(uri=uri, checksum=checksums.get(uri)))
        self._verifier.verify(references, gate=ctx.policy.tool_name)
        ctx.facts["evidence_refs_verified"] = len({ref.uri for ref in references})

    def _evidence_mutable(self, ctx: ToolContext) -> None:
        state = ctx.current_state
        if state in TERMINAL_STATES:
            raise ConflictError(
                f"Evidence is sealed once a ticket is {state}",
                code="EVIDENCE_IMMUTABLE",
                details={"ticket_id": ctx.ticket_id, "state": state},
            )

    def _change_request(self, ctx: ToolContext) -> None:
        pending = (ctx.ticket or {}).get("change_request")
        if not pending:
            return
        resumed = TicketState.IN_PROGRESS.value
        if resumed in ctx.policy.declared_results:
            ctx.next_state = resumed
        ctx.facts["change_request"] = pending


def _first_not_none(*values: Any) -> Optional[Any]:
    for value in values:
        if value is not None:
            return value
    return None


def _active_waivers(ticket: Dict[str, Any]) -> List[str]:
    exception = ticket.get("evidence_exception") or {}
    expires_at = exception.get("expires_at")
    if expires_at and parse_iso(expires_at) <= utc_now():
        return []
    return list(exception.get("evidence_refs") or [])
