"""
Insert-only views over the transition log and the audit log.

Neither class exposes an update or delete path; the datastore triggers
installed by the schema reject them as well.
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from dispatchgate.storage.base import StorageBackend
from dispatchgate.utils.canonical import canonical_json
from dispatchgate.utils.clock import to_iso


OUTCOME_APPLIED = "APPLIED"
OUTCOME_REJECTED = "REJECTED"
OUTCOME_OUTBOX = "OUTBOX"


class TransitionLog:
    def __init__(self, storage: StorageBackend):
        self._storage = storage

    def append(
        self,
        *,
        ticket_id: str,
        from_state: Optional[str],
        to_state: str,
        tool_name: str,
        actor_id: str,
        actor_role: str,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        entry_id = uuid.uuid4().hex
        self._storage.execute(
            """
            INSERT INTO ticket_state_transitions (
                id, ticket_id, from_state, to_state, tool_name, actor_id, actor_role, request_id, correlation_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry_id,
                ticket_id,
                from_state,
                to_state,
                tool_name,
                actor_id,
                actor_role,
                request_id,
                correlation_id,
                to_iso(),
            ),
        )
        return entry_id

    def for_ticket(self, ticket_id: str) -> List[Dict[str, Any]]:
        return self._storage.fetchall(
            """
            SELECT id, ticket_id, from_state, to_state, tool_name, actor_id, actor_role, request_id, correlation_id, created_at
            FROM ticket_state_transitions
            WHERE ticket_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (ticket_id,),
        )


class AuditLog:
    def __init__(self, storage: StorageBackend):
        self._storage = storage

    def append(
        self,
        *,
        actor_id: str,
        actor_role: str,
        actor_type: str,
        tool_name: str,
        outcome: str,
        ticket_id: Optional[str] = None,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        before_state: Optional[str] = None,
        after_state: Optional[str] = None,
        error_code: Optional[str] = None,
        payload_fingerprint: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        event_id = uuid.uuid4().hex
        self._storage.execute(
            """
            INSERT INTO audit_events (
                id, ticket_id, actor_id, actor_role, actor_type, tool_name, request_id, correlation_id, trace_id,
                before_state, after_state, outcome, error_code, payload_fingerprint, payload, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event_id,
                ticket_id,
                actor_id,
                actor_role,
                actor_type,
                tool_name,
                request_id,
                correlation_id,
                trace_id,
                before_state,
                after_state,
                outcome,
                error_code,
                payload_fingerprint,
                canonical_json(payload or {}),
                to_iso(),
            ),
        )
        return event_id

    def for_ticket(self, ticket_id: str) -> List[Dict[str, Any]]:
        rows = self._storage.fetchall(
            """
            SELECT id, ticket_id, actor_id, actor_role, actor_type, tool_name, request_id, correlation_id, trace_id,
                   before_state, after_state, outcome, error_code, payload_fingerprint, payload, created_at
            FROM audit_events
            WHERE ticket_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (ticket_id,),
        )
        for row in rows:
            row["payload"] = json.loads(row["payload"]) if row.get("payload") else {}
        return rows
