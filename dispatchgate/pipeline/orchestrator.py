from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

from pydantic import ValidationError

from dispatchgate.audit.idempotency import CONFLICT, REPLAY, IdempotencyStore
from dispatchgate.audit.ledger import OUTCOME_APPLIED, OUTCOME_REJECTED, AuditLog, TransitionLog
from dispatchgate.config import DispatchSettings
from dispatchgate.errors import (
    DispatchError,
    IdempotencyRaceError,
    InputError,
    idempotency_mismatch,
    invalid_payload,
    missing_idempotency_key,
    ticket_not_found,
)
from dispatchgate.gates.authorization import authorize, resolve_tool
from dispatchgate.gates.closeout import IncidentTemplateSet, load_incident_templates
from dispatchgate.gates.evidence import EvidenceReferenceVerifier
from dispatchgate.gates.risk import RiskRuleSet, load_risk_rules
from dispatchgate.gates.transitions import validate_transition
from dispatchgate.observability import internal_metrics
from dispatchgate.outbox.store import OutboxStore, outbox_idempotency_key
from dispatchgate.pipeline.context import ToolContext
from dispatchgate.pipeline.envelope import MutationResult, PipelineStage, RequestEnvelope
from dispatchgate.pipeline.handlers import get_handler, outbound_sms_body
from dispatchgate.pipeline.requirements import RequirementGates
from dispatchgate.policy.table import ToolPolicy
from dispatchgate.storage.base import StorageBackend
from dispatchgate.tickets.repository import TicketRepository
from dispatchgate.utils.canonical import canonical_json, payload_fingerprint


logger = logging.getLogger(__name__)


def _normalized_body(body: Dict[str, Any]) -> Dict[str, Any]:
    # Round-trip through canonical JSON so a first response and its replay are identical.
    return json.loads(canonical_json(body))


class MutationPipeline:
    """
    Runs every tool call through the fixed gate sequence:

        RECEIVED -> IDEMPOTENCY_CHECKED -> AUTHORIZED -> TRANSITION_VALIDATED
                 -> REQUIREMENTS_EVALUATED -> PERSISTED -> RESPONDED

    Any gate failure short-circuits with an error result. Everything a
    successful mutation writes (ticket row, transition row, audit row, outbox
    row, idempotency record) commits in one transaction.
    """

    def __init__(
        self,
        storage: StorageBackend,
        settings: DispatchSettings,
        *,
        verifier: Optional[EvidenceReferenceVerifier] = None,
        templates: Optional[IncidentTemplateSet] = None,
        risk_rules: Optional[RiskRuleSet] = None,
    ):
        self._storage = storage
        self._settings = settings
        self._tickets = TicketRepository(storage)
        self._idempotency = IdempotencyStore(storage)
        self._transitions = TransitionLog(storage)
        self._audit = AuditLog(storage)
        self._outbox = OutboxStore(storage)
        self._gates = RequirementGates(
            settings,
            self._tickets,
            templates=templates or load_incident_templates(settings.incident_templates_path),
            risk_rules=risk_rules or load_risk_rules(settings.risk_rules_path),
            verifier=verifier or EvidenceReferenceVerifier(settings),
        )

    @property
    def tickets(self) -> TicketRepository:
        return self._tickets

    def execute(self, envelope: RequestEnvelope) -> MutationResult:
        request_id = envelope.request_key or f"req-{uuid.uuid4().hex}"
        correlation_id = envelope.correlation_id or request_id
        log_extra = {
            "tool_name": envelope.tool_name,
            "ticket_id": envelope.ticket_id,
            "request_id": request_id,
            "correlation_id": correlation_id,
        }

        stage = PipelineStage.RECEIVED
        try:
            policy = resolve_tool(envelope.tool_name)
            if not policy.mutating:
                return self._read(policy, envelope, request_id, correlation_id)
            if policy.idempotency_required and not envelope.request_key:
                raise missing_idempotency_key(policy.tool_name)
            if policy.ticket_scoped and not envelope.ticket_id:
                raise InputError(f"{policy.tool_name} requires a ticket_id", details={"tool_name": policy.tool_name})
            try:
                model = policy.payload_model.model_validate(envelope.payload or {})
            except ValidationError as exc:
                raise invalid_payload(
                    policy.tool_name,
                    json.loads(exc.json(include_url=False, include_context=False)),
                ) from exc
            payload = model.model_dump(mode="json", exclude_none=True)
            fingerprint = payload_fingerprint(
                tool_name=policy.tool_name,
                ticket_id=envelope.ticket_id,
                payload=payload,
            )

            stage = PipelineStage.IDEMPOTENCY_CHECKED
            replay = self._admit(envelope, fingerprint, stage)
            if replay is not None:
                return replay

            stage = PipelineStage.AUTHORIZED
            decision = authorize(envelope.actor_role, policy.tool_name)
        except DispatchError as exc:
            return self._failure(exc, stage, request_id, correlation_id, log_extra)

        ctx = ToolContext(
            policy=policy,
            envelope=envelope,
            actor_role=decision.actor_role,
            request_id=request_id,
            correlation_id=correlation_id,
            model=model,
            payload=payload,
            fingerprint=fingerprint,
        )
        try:
            result = self._apply(ctx)
        except IdempotencyRaceError:
            # A concurrent request with the same key committed first; answer as a lookup.
            internal_metrics.incr("idempotency_race_total")
            try:
                retried = self._admit(envelope, fingerprint, PipelineStage.IDEMPOTENCY_CHECKED)
            except DispatchError as exc:
                return self._failure(exc, PipelineStage.IDEMPOTENCY_CHECKED, request_id, correlation_id, log_extra)
            if retried is not None:
                return retried
            raise
        except DispatchError as exc:
            self._audit_rejection(ctx, exc)
            return self._failure(exc, ctx.stage, request_id, correlation_id, log_extra)

        internal_metrics.incr("mutations_applied_total")
        logger.info(
            "tool applied",
            extra={**log_extra, "ticket_id": ctx.ticket_id},
        )
        return result

    def _admit(self, envelope: RequestEnvelope, fingerprint: str, stage: PipelineStage) -> Optional[MutationResult]:
        if not envelope.request_key:
            return None
        claim = self._idempotency.admit(envelope.actor_id, envelope.request_key, fingerprint)
        if claim.state == CONFLICT:
            raise idempotency_mismatch()
        if claim.state == REPLAY and claim.response is not None:
            internal_metrics.incr("idempotent_replays_total")
            return MutationResult(
                status_code=claim.response.status_code,
                body=claim.response.body,
                stage=stage,
                replayed=True,
                headers={"Idempotent-Replayed": "true"},
            )
        return None

    def _apply(self, ctx: ToolContext) -> MutationResult:
        policy = ctx.policy
        envelope = ctx.envelope
        with self._storage.transaction():
            if policy.ticket_scoped:
                ctx.ticket = self._tickets.get(envelope.ticket_id, for_update=True)
                if ctx.ticket is None:
                    raise ticket_not_found(envelope.ticket_id)

            ctx.decision = validate_transition(policy, ctx.current_state, ctx.payload, actor_id=envelope.actor_id)
            ctx.next_state = ctx.decision.next_state
            ctx.stage = PipelineStage.TRANSITION_VALIDATED

            self._gates.evaluate(ctx)
            ctx.stage = PipelineStage.REQUIREMENTS_EVALUATED

            effect = get_handler(policy.tool_name)(ctx, self._tickets)
            body = effect.body
            audit_ticket_id = effect.audit_ticket_id

            if policy.tool_name == "outbox.replay":
                event = self._outbox.replay_dead_letter(ctx.payload["outbox_id"])
                body = event
                if event.get("aggregate_type") == "ticket":
                    audit_ticket_id = event.get("aggregate_id")
                effect.audit.update({"outbox_id": event["id"], "idempotency_key": event["idempotency_key"]})
            elif policy.creates_ticket:
                fields = dict(effect.ticket_fields)
                fields["state"] = ctx.next_state
                ctx.ticket = self._tickets.insert(fields)
            elif ctx.ticket is not None:
                changes = dict(effect.ticket_fields)
                if ctx.changes_state:
                    changes["state"] = ctx.next_state
                if changes:
                    ctx.ticket = self._tickets.update(
                        ctx.ticket["id"],
                        expected_version=ctx.ticket["version"],
                        changes=changes,
                    )
            ctx.stage = PipelineStage.PERSISTED

            before_state = ctx.decision.from_state
            after_state = ctx.ticket["state"] if ctx.ticket is not None else None
            ticket_id = ctx.ticket["id"] if ctx.ticket is not None else audit_ticket_id

            if ctx.ticket is not None and after_state != before_state:
                self._transitions.append(
                    ticket_id=ticket_id,
                    from_state=before_state,
                    to_state=after_state,
                    tool_name=policy.tool_name,
                    actor_id=envelope.actor_id,
                    actor_role=ctx.actor_role,
                    request_id=ctx.request_id,
                    correlation_id=ctx.correlation_id,
                )
                internal_metrics.incr("state_transitions_total")

            outbox_event = self._emit_outbox(ctx, before_state, after_state)

            audit_payload: Dict[str, Any] = {"payload": ctx.payload}
            audit_payload.update(effect.audit)
            if ctx.decision.bypass_applied:
                audit_payload["bypass_applied"] = True
            if "risk_profile" in ctx.facts:
                audit_payload["risk_profile"] = ctx.facts["risk_profile"]
            if outbox_event is not None:
                audit_payload["outbox_id"] = outbox_event["id"]
            self._audit.append(
                actor_id=envelope.actor_id,
                actor_role=ctx.actor_role,
                actor_type=envelope.actor_type,
                tool_name=policy.tool_name,
                outcome=OUTCOME_APPLIED,
                ticket_id=ticket_id,
                request_id=ctx.request_id,
                correlation_id=ctx.correlation_id,
                trace_id=envelope.trace_id,
                before_state=before_state,
                after_state=after_state,
                payload_fingerprint=ctx.fingerprint,
                payload=audit_payload,
            )

            response_body = _normalized_body(body if body is not None else ctx.ticket or {})
            if envelope.request_key:
                self._idempotency.record(
                    actor_id=envelope.actor_id,
                    request_key=envelope.request_key,
                    tool_name=policy.tool_name,
                    fingerprint=ctx.fingerprint,
                    status_code=effect.status_code,
                    body=response_body,
                )

        return MutationResult(
            status_code=effect.status_code,
            body=response_body,
            stage=PipelineStage.RESPONDED,
            headers={"X-Correlation-Id": ctx.correlation_id},
        )

    def _emit_outbox(
        self,
        ctx: ToolContext,
        before_state: Optional[str],
        after_state: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        event_type = ctx.policy.outbox_event
        ticket = ctx.ticket
        if event_type is None or ticket is None or after_state == before_state:
            return None
        phone = ticket.get("customer_phone")
        if not phone:
            return None
        # ticket_version is post-update, so a repeated edge (re-dispatch) gets its own key.
        facts = {
            "from_state": before_state,
            "to_state": after_state,
            "ticket_version": ticket["version"],
            "scheduled_start": ticket.get("scheduled_start"),
            "scheduled_end": ticket.get("scheduled_end"),
        }
        event = self._outbox.enqueue(
            aggregate_type="ticket",
            aggregate_id=ticket["id"],
            event_type=event_type,
            payload={
                "to": phone,
                "body": outbound_sms_body(event_type, ticket),
                "ticket_id": ticket["id"],
                "correlation_id": ctx.correlation_id,
            },
            idempotency_key=outbox_idempotency_key(ticket["id"], event_type, facts),
        )
        internal_metrics.incr("outbox_enqueued_total")
        return event

    def _audit_rejection(self, ctx: ToolContext, exc: DispatchError) -> None:
        with self._storage.transaction():
            self._audit.append(
                actor_id=ctx.envelope.actor_id,
                actor_role=ctx.actor_role,
                actor_type=ctx.envelope.actor_type,
                tool_name=ctx.policy.tool_name,
                outcome=OUTCOME_REJECTED,
                ticket_id=ctx.ticket["id"] if ctx.ticket is not None else None,
                request_id=ctx.request_id,
                correlation_id=ctx.correlation_id,
                trace_id=ctx.envelope.trace_id,
                before_state=ctx.current_state,
                after_state=ctx.current_state,
                error_code=exc.code,
                payload_fingerprint=ctx.fingerprint,
                payload={"payload": ctx.payload, "error": exc.to_body()["error"]},
            )

    def _failure(
        self,
        exc: DispatchError,
        stage: PipelineStage,
        request_id: str,
        correlation_id: str,
        log_extra: Dict[str, Any],
    ) -> MutationResult:
        internal_metrics.incr("mutations_rejected_total")
        internal_metrics.incr(f"mutations_rejected_{exc.code.lower()}")
        logger.info(
            "tool rejected at %s: %s",
            stage.value,
            exc.message,
            extra={**log_extra, "error_code": exc.code},
        )
        return MutationResult(
            status_code=exc.status_code,
            body=exc.to_body(request_id=request_id, correlation_id=correlation_id),
            stage=stage,
            headers={"X-Correlation-Id": correlation_id},
        )

    def _read(
        self,
        policy: ToolPolicy,
        envelope: RequestEnvelope,
        request_id: str,
        correlation_id: str,
    ) -> MutationResult:
        authorize(envelope.actor_role, policy.tool_name)
        ticket_id = envelope.ticket_id
        ticket = self._tickets.get(ticket_id) if ticket_id else None
        if ticket is None:
            raise ticket_not_found(str(ticket_id))
        if policy.tool_name == "ticket.timeline":
            body: Dict[str, Any] = {
                "ticket_id": ticket_id,
                "transitions": self._transitions.for_ticket(ticket_id),
                "audit_events": self._audit.for_ticket(ticket_id),
            }
        elif policy.tool_name == "closeout.list_evidence":
            body = {"ticket_id": ticket_id, "evidence": self._tickets.list_evidence(ticket_id)}
        else:
            body = ticket
        return MutationResult(
            status_code=200,
            body=_normalized_body(body),
            stage=PipelineStage.RESPONDED,
            headers={"X-Correlation-Id": correlation_id},
        )
