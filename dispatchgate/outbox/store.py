from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from dispatchgate.errors import ConflictError, NotFoundError, OutboxConflictError
from dispatchgate.storage.base import StorageBackend
from dispatchgate.utils.canonical import canonical_json, sha256_json
from dispatchgate.utils.clock import to_iso


STATUS_PENDING = "PENDING"
STATUS_SENT = "SENT"
STATUS_DEAD_LETTER = "DEAD_LETTER"

_OUTBOX_COLUMNS = (
    "id, aggregate_type, aggregate_id, event_type, payload, idempotency_key, status, attempt_count, "
    "next_attempt_at, last_error, provider, provider_message_id, provider_status, sent_at, created_at, updated_at"
)


def _row_to_event(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    event = dict(row)
    event["payload"] = json.loads(event["payload"]) if event.get("payload") else {}
    event["attempt_count"] = int(event.get("attempt_count") or 0)
    return event


def transition_id(ticket_id: str, event_type: str, facts: Dict[str, Any]) -> str:
    return f"{ticket_id}:{event_type}:{sha256_json({'ticket_id': ticket_id, 'event_type': event_type, **facts})}"


def outbox_idempotency_key(ticket_id: str, event_type: str, facts: Dict[str, Any]) -> str:
    """
    ``{ticket}:{event}:{transition_id}``. The same logical transition always
    maps to the same key, so a second enqueue for it violates uniqueness.
    """
    return f"{ticket_id}:{event_type}:{transition_id(ticket_id, event_type, facts)}"


class OutboxStore:
    def __init__(self, storage: StorageBackend):
        self._storage = storage

    def enqueue(
        self,
        *,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: Dict[str, Any],
        idempotency_key: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        event_id = uuid.uuid4().hex
        stamp = to_iso(now)
        try:
            self._storage.execute(
                f"""
                INSERT INTO dispatch_outbox ({_OUTBOX_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, NULL, NULL, NULL, NULL, NULL, ?, ?)
                """,
                (
                    event_id,
                    aggregate_type,
                    aggregate_id,
                    event_type,
                    canonical_json(payload),
                    idempotency_key,
                    STATUS_PENDING,
                    stamp,
                    stamp,
                    stamp,
                ),
            )
        except Exception as exc:
            if self._storage.is_unique_violation(exc):
                raise OutboxConflictError(
                    "An outbox event with this idempotency key already exists",
                    details={"idempotency_key": idempotency_key, "event_type": event_type},
                ) from exc
            raise
        return self.get(event_id) or {}

    def get(self, outbox_id: str) -> Optional[Dict[str, Any]]:
        return _row_to_event(
            self._storage.fetchone(f"SELECT {_OUTBOX_COLUMNS} FROM dispatch_outbox WHERE id = ?", (outbox_id,))
        )

    def list_for_aggregate(self, aggregate_id: str) -> List[Dict[str, Any]]:
        rows = self._storage.fetchall(
            f"SELECT {_OUTBOX_COLUMNS} FROM dispatch_outbox WHERE aggregate_id = ? ORDER BY created_at ASC, id ASC",
            (aggregate_id,),
        )
        return [_row_to_event(row) for row in rows]

    def claim_due(self, *, limit: int, now: datetime) -> List[Dict[str, Any]]:
        """
        Claim up to ``limit`` due PENDING rows, oldest first. Must run inside a
        transaction; rows locked by another worker are skipped, not waited on.
        """
        query = (
            f"SELECT {_OUTBOX_COLUMNS} FROM dispatch_outbox "
            "WHERE status = ? AND next_attempt_at <= ? "
            "ORDER BY created_at ASC, id ASC LIMIT ?"
            + self._storage.row_lock_clause(skip_locked=True)
        )
        rows = self._storage.fetchall(query, (STATUS_PENDING, to_iso(now), int(limit)))
        return [_row_to_event(row) for row in rows]

    def mark_sent(self, event: Dict[str, Any], *, provider: Dict[str, Any], now: datetime) -> None:
        payload = dict(event.get("payload") or {})
        payload["provider"] = provider
        stamp = to_iso(now)
        self._storage.execute(
            """
            UPDATE dispatch_outbox
            SET status = ?, payload = ?, provider = ?, provider_message_id = ?, provider_status = ?,
                last_error = NULL, sent_at = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                STATUS_SENT,
                canonical_json(payload),
                provider.get("provider"),
                provider.get("provider_message_id"),
                provider.get("status"),
                stamp,
                stamp,
                event["id"],
                STATUS_PENDING,
            ),
        )

    def mark_retry(self, event_id: str, *, attempt_count: int, next_attempt_at: datetime, error: str, now: datetime) -> None:
        self._storage.execute(
            """
            UPDATE dispatch_outbox
            SET attempt_count = ?, next_attempt_at = ?, last_error = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (int(attempt_count), to_iso(next_attempt_at), error, to_iso(now), event_id, STATUS_PENDING),
        )

    def mark_dead_letter(self, event_id: str, *, attempt_count: int, error: str, now: datetime) -> None:
        self._storage.execute(
            """
            UPDATE dispatch_outbox
            SET status = ?, attempt_count = ?, last_error = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (STATUS_DEAD_LETTER, int(attempt_count), error, to_iso(now), event_id, STATUS_PENDING),
        )

    def replay_dead_letter(self, outbox_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Operator action: DEAD_LETTER -> PENDING with attempts zeroed; the idempotency key is kept."""
        event = self.get(outbox_id)
        if event is None:
            raise NotFoundError(
                f"Outbox event {outbox_id} not found",
                code="OUTBOX_EVENT_NOT_FOUND",
                details={"outbox_id": outbox_id},
            )
        if event["status"] != STATUS_DEAD_LETTER:
            raise ConflictError(
                f"Outbox event {outbox_id} is {event['status']}, only DEAD_LETTER events can be replayed",
                code="OUTBOX_NOT_DEAD_LETTER",
                details={"outbox_id": outbox_id, "status": event["status"]},
            )
        stamp = to_iso(now)
        self._storage.execute(
            """
            UPDATE dispatch_outbox
            SET status = ?, attempt_count = 0, last_error = NULL, next_attempt_at = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (STATUS_PENDING, stamp, stamp, outbox_id, STATUS_DEAD_LETTER),
        )
        return self.get(outbox_id) or {}
