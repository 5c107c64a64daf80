"""
Per-tool effects.

A handler runs after every gate has passed and returns an ``Effect``: the
ticket columns to write, plus any body or audit facts that differ from the
default "return the ticket" response. Handlers may write their own dependent
rows (evidence, closeout artifact) because they run inside the mutation
transaction.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from dispatchgate.gates.closeout import normalize_incident_type
from dispatchgate.gates.intake import phone_digits
from dispatchgate.pipeline.context import Effect, ToolContext
from dispatchgate.tickets.repository import TicketRepository
from dispatchgate.utils.clock import to_iso


Handler = Callable[[ToolContext, TicketRepository], Effect]

_TICKET_INPUT_FIELDS = (
    "account_id",
    "site_id",
    "summary",
    "description",
    "incident_type",
    "priority",
    "nte_cents",
    "customer_name",
    "customer_phone",
    "customer_email",
)


def _ticket_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    fields = {key: payload.get(key) for key in _TICKET_INPUT_FIELDS}
    if fields.get("incident_type"):
        fields["incident_type"] = normalize_incident_type(fields["incident_type"])
    if fields.get("customer_phone"):
        fields["customer_phone"] = phone_digits(fields["customer_phone"]) or None
    return fields


def _create(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    return Effect(ticket_fields=_ticket_fields(ctx.payload), status_code=201)


def _blind_intake(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    intake = ctx.facts.get("intake") or {}
    fields = _ticket_fields(ctx.payload)
    fields.update(
        {
            "identity_signature": ctx.facts.get("identity_signature"),
            "identity_confidence": ctx.payload.get("identity_confidence"),
            "classification_confidence": ctx.payload.get("classification_confidence"),
            "sop_handoff_acknowledged": bool(ctx.payload.get("sop_handoff_acknowledged")),
            "sop_handoff_required": bool(intake.get("sop_handoff_required")),
            "sop_handoff_prompt": intake.get("sop_handoff_prompt"),
        }
    )
    return Effect(ticket_fields=fields, status_code=201, audit={"intake": intake})


def _triage(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    payload = ctx.payload
    fields: Dict[str, Any] = {"incident_type": normalize_incident_type(payload["incident_type"])}
    for key in (
        "priority",
        "nte_cents",
        "identity_confidence",
        "classification_confidence",
        "sop_handoff_acknowledged",
    ):
        if payload.get(key) is not None:
            fields[key] = payload[key]
    if "intake" in ctx.facts:
        # The gate passed, so any earlier handoff prompt is resolved.
        fields["sop_handoff_required"] = False
        fields["sop_handoff_prompt"] = None
    return Effect(ticket_fields=fields)


def _schedule_propose(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    return Effect(ticket_fields={"schedule_options": ctx.payload["options"]})


def _schedule_confirm(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    return Effect(
        ticket_fields={
            "scheduled_start": ctx.payload["start"],
            "scheduled_end": ctx.payload["end"],
        }
    )


def _dispatch(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    audit: Dict[str, Any] = {"tech_id": ctx.payload["tech_id"]}
    if ctx.decision is not None and ctx.decision.bypass_applied:
        audit["bypass"] = {
            "dispatch_mode": ctx.payload.get("dispatch_mode"),
            "dispatch_rationale": ctx.payload.get("dispatch_rationale"),
        }
    return Effect(ticket_fields={"assigned_tech_id": ctx.payload["tech_id"]}, audit=audit)


def _check_in(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    tech_id = ctx.payload.get("tech_id")
    if tech_id and not (ctx.ticket or {}).get("assigned_tech_id"):
        return Effect(ticket_fields={"assigned_tech_id": tech_id})
    return Effect()


def _completion(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    checklist = dict((ctx.ticket or {}).get("checklist_status") or {})
    checklist.update(ctx.payload.get("checklist_status") or {})
    audit = {key: ctx.facts[key] for key in ("closeout", "risk_profile") if key in ctx.facts}
    if ctx.payload.get("no_signature_reason"):
        audit["no_signature_reason"] = ctx.payload["no_signature_reason"]
    return Effect(ticket_fields={"checklist_status": checklist}, audit=audit)


def _add_evidence(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    item = tickets.add_evidence(
        ctx.ticket["id"],
        kind=ctx.payload["kind"],
        uri=ctx.payload["uri"],
        checksum=ctx.payload.get("checksum"),
        evidence_key=ctx.payload.get("evidence_key"),
        metadata=ctx.payload.get("metadata") or {},
    )
    return Effect(status_code=201, body=item, audit={"evidence_id": item.get("id"), "uri": item.get("uri")})


def _seal_and_close(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    sealed = tickets.seal_evidence(ctx.ticket["id"])
    artifact = tickets.write_closeout_artifact(
        ctx.ticket["id"],
        tool_name=ctx.policy.tool_name,
        closed_by=ctx.envelope.actor_id,
    )
    audit: Dict[str, Any] = {
        "closeout_artifact_id": artifact["id"],
        "evidence_hash": artifact["evidence_hash"],
        "evidence_sealed": sealed,
    }
    if ctx.policy.override:
        audit["override_code"] = ctx.payload.get("override_code")
        audit["override_reason"] = ctx.payload.get("override_reason")
    return Effect(audit=audit)


def _with_reason(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    return Effect(audit={"reason": ctx.payload.get("reason")})


def _force_unassign(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    previous = (ctx.ticket or {}).get("assigned_tech_id")
    return Effect(
        ticket_fields={"assigned_tech_id": None},
        audit={"reason": ctx.payload.get("reason"), "unassigned_tech_id": previous},
    )


def _request_change(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    payload = ctx.payload
    request = {
        "approval_type": payload["approval_type"],
        "reason": payload["reason"],
        "amount_delta_cents": payload.get("amount_delta_cents"),
        "evidence_refs": payload.get("evidence_refs") or [],
        "requested_by": ctx.envelope.actor_id,
        "requested_at": to_iso(),
    }
    return Effect(ticket_fields={"change_request": request}, audit={"change_request": request})


def _approval_decide(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    decision = ctx.payload["decision"]
    audit: Dict[str, Any] = {"decision": decision}
    request = ctx.facts.get("change_request")
    if not request:
        return Effect(audit=audit)

    # The request is settled either way; only an approved NTE increase moves money.
    fields: Dict[str, Any] = {"change_request": None}
    audit["change_request"] = request
    if decision == "APPROVED" and request.get("approval_type") == "NTE_INCREASE":
        current = int((ctx.ticket or {}).get("nte_cents") or 0)
        fields["nte_cents"] = current + int(request.get("amount_delta_cents") or 0)
        audit["nte_cents"] = {"before": current, "after": fields["nte_cents"]}
    return Effect(ticket_fields=fields, audit=audit)


def _evidence_exception(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    exception = {
        "exception_reason": ctx.payload["exception_reason"],
        "evidence_refs": ctx.payload.get("evidence_refs") or [],
        "expires_at": ctx.payload.get("expires_at"),
        "granted_by": ctx.envelope.actor_id,
        "granted_at": to_iso(),
    }
    return Effect(ticket_fields={"evidence_exception": exception}, audit={"evidence_exception": exception})


def _noop(ctx: ToolContext, tickets: TicketRepository) -> Effect:
    return Effect()


HANDLERS: Dict[str, Handler] = {
    "ticket.create": _create,
    "ticket.blind_intake": _blind_intake,
    "ticket.triage": _triage,
    "approval.decide": _approval_decide,
    "schedule.propose": _schedule_propose,
    "schedule.confirm": _schedule_confirm,
    "assignment.dispatch": _dispatch,
    "tech.check_in": _check_in,
    "closeout.add_evidence": _add_evidence,
    "closeout.candidate": _completion,
    "tech.complete": _completion,
    "tech.request_change": _request_change,
    "closeout.evidence_exception": _evidence_exception,
    "qa.verify": _noop,
    "billing.generate_invoice": _noop,
    "ticket.close": _seal_and_close,
    "ticket.force_close": _seal_and_close,
    "reopen_after_verification": _with_reason,
    "ticket.cancel": _with_reason,
    "dispatch.force_hold": _with_reason,
    "dispatch.force_unassign": _force_unassign,
}


def get_handler(tool_name: str) -> Handler:
    return HANDLERS.get(tool_name, _noop)


def _when(value: Optional[str]) -> str:
    return value or "the scheduled window"


def outbound_sms_body(event_type: str, ticket: Dict[str, Any]) -> str:
    summary = ticket.get("summary") or "your service request"
    if event_type == "schedule.confirm.sms":
        return (
            f"Your service visit for {summary} is confirmed for {_when(ticket.get('scheduled_start'))}. "
            f"Reference {ticket['id']}."
        )
    if event_type == "assignment.dispatch.sms":
        return f"A technician has been dispatched for {summary}. Reference {ticket['id']}."
    return f"Update on {summary}: status {ticket.get('state')}. Reference {ticket['id']}."
