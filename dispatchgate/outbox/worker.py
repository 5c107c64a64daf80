from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dispatchgate.audit.ledger import OUTCOME_OUTBOX, AuditLog
from dispatchgate.config import DispatchSettings
from dispatchgate.observability import internal_metrics
from dispatchgate.outbox.channel import ChannelAdapter, OutboundMessage, build_channel_adapter
from dispatchgate.outbox.store import OutboxStore, STATUS_DEAD_LETTER, STATUS_PENDING, STATUS_SENT
from dispatchgate.policy.roles import SYSTEM
from dispatchgate.storage.base import StorageBackend
from dispatchgate.utils.clock import utc_now


logger = logging.getLogger(__name__)

WORKER_TOOL_NAME = "dispatch.outbox_worker"
WORKER_ACTOR_ID = "outbox-worker"


def compute_backoff_seconds(*, attempts: int, base_seconds: int, max_seconds: int) -> int:
    exp = max(0, int(attempts) - 1)
    return int(min(max_seconds, base_seconds * (2**exp)))


class OutboxWorker:
    """
    Drains due PENDING outbox rows through a channel adapter.

    One iteration is one transaction: the claim and every row's result commit
    together, so a crash mid-batch leaves the rows PENDING for the next run.
    """

    def __init__(
        self,
        storage: StorageBackend,
        settings: DispatchSettings,
        adapter: Optional[ChannelAdapter] = None,
    ):
        self._storage = storage
        self._settings = settings
        self._adapter = adapter or build_channel_adapter(settings)
        self._store = OutboxStore(storage)
        self._audit = AuditLog(storage)

    def run_iteration(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "ok": True,
            "processed": 0,
            "sent": 0,
            "failed": 0,
            "dead_lettered": 0,
            "skipped": False,
            "reason": None,
            "results": [],
        }
        if not self._settings.channel_enabled:
            summary["skipped"] = True
            summary["reason"] = "CHANNEL_DISABLED"
            return summary

        moment = now or utc_now()
        with self._storage.transaction():
            events = self._store.claim_due(limit=self._settings.outbox_batch_limit, now=moment)
            results: List[Dict[str, Any]] = []
            for event in events:
                results.append(self._process(event, moment))

        for result in results:
            summary["processed"] += 1
            if result["status"] == STATUS_SENT:
                summary["sent"] += 1
            elif result["status"] == STATUS_DEAD_LETTER:
                summary["dead_lettered"] += 1
            else:
                summary["failed"] += 1
        summary["results"] = results
        internal_metrics.incr("outbox_sent_total", summary["sent"])
        internal_metrics.incr("outbox_retry_scheduled_total", summary["failed"])
        internal_metrics.incr("outbox_dead_lettered_total", summary["dead_lettered"])
        return summary

    def _process(self, event: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        payload = event.get("payload") or {}
        message = OutboundMessage(
            to=str(payload.get("to") or ""),
            body=str(payload.get("body") or ""),
            message_key=str(event["idempotency_key"]),
        )
        attempt_number = int(event["attempt_count"]) + 1
        try:
            result = self._adapter.send(message)
        except Exception as exc:
            return self._record_failure(event, attempt_number=attempt_number, error=str(exc) or type(exc).__name__, now=now)

        provider = result.to_dict()
        self._store.mark_sent(event, provider=provider, now=now)
        self._write_audit(event, status=STATUS_SENT, extra={"provider": provider, "attempt_count": event["attempt_count"]})
        logger.info(
            "outbox event sent",
            extra={"outbox_id": event["id"], "ticket_id": event.get("aggregate_id")},
        )
        return {"outbox_id": event["id"], "status": STATUS_SENT, "provider": provider}

    def _record_failure(self, event: Dict[str, Any], *, attempt_number: int, error: str, now: datetime) -> Dict[str, Any]:
        if attempt_number < self._settings.outbox_max_attempts:
            delay = compute_backoff_seconds(
                attempts=attempt_number,
                base_seconds=self._settings.outbox_retry_base_seconds,
                max_seconds=self._settings.outbox_retry_max_seconds,
            )
            next_attempt = now + timedelta(seconds=delay)
            self._store.mark_retry(
                event["id"],
                attempt_count=attempt_number,
                next_attempt_at=next_attempt,
                error=error,
                now=now,
            )
            status = STATUS_PENDING
        else:
            self._store.mark_dead_letter(event["id"], attempt_count=attempt_number, error=error, now=now)
            status = STATUS_DEAD_LETTER
            next_attempt = None
        self._write_audit(event, status=status, extra={"attempt_count": attempt_number, "last_error": error})
        logger.warning(
            "outbox send failed (attempt %s/%s): %s",
            attempt_number,
            self._settings.outbox_max_attempts,
            error,
            extra={"outbox_id": event["id"], "ticket_id": event.get("aggregate_id")},
        )
        return {
            "outbox_id": event["id"],
            "status": status,
            "attempt_count": attempt_number,
            "next_attempt_at": next_attempt.isoformat() if next_attempt else None,
            "error": error,
        }

    def _write_audit(self, event: Dict[str, Any], *, status: str, extra: Dict[str, Any]) -> None:
        payload = {
            "outbox_id": event["id"],
            "event_type": event["event_type"],
            "idempotency_key": event["idempotency_key"],
            "status": status,
        }
        payload.update(extra)
        ticket_id = event["aggregate_id"] if event.get("aggregate_type") == "ticket" else None
        self._audit.append(
            actor_id=WORKER_ACTOR_ID,
            actor_role=SYSTEM,
            actor_type="SYSTEM",
            tool_name=WORKER_TOOL_NAME,
            outcome=OUTCOME_OUTBOX,
            ticket_id=ticket_id,
            request_id=event["idempotency_key"],
            payload=payload,
        )
