from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from dispatchgate.errors import TicketVersionConflictError
from dispatchgate.policy.states import TERMINAL_STATES
from dispatchgate.storage.base import StorageBackend
from dispatchgate.utils.canonical import canonical_json, sha256_json
from dispatchgate.utils.clock import to_iso


TICKET_COLUMNS = (
    "id",
    "state",
    "version",
    "account_id",
    "site_id",
    "summary",
    "description",
    "incident_type",
    "priority",
    "nte_cents",
    "schedule_options",
    "scheduled_start",
    "scheduled_end",
    "assigned_tech_id",
    "customer_name",
    "customer_phone",
    "customer_email",
    "identity_signature",
    "identity_confidence",
    "classification_confidence",
    "sop_handoff_required",
    "sop_handoff_acknowledged",
    "sop_handoff_prompt",
    "checklist_status",
    "change_request",
    "evidence_exception",
    "created_at",
    "updated_at",
)

_JSON_COLUMNS = {"schedule_options", "checklist_status", "change_request", "evidence_exception"}
_BOOL_COLUMNS = {"sop_handoff_required", "sop_handoff_acknowledged"}
_MUTABLE_COLUMNS = frozenset(TICKET_COLUMNS) - {"id", "version", "created_at", "updated_at"}


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        return None if value is None else canonical_json(value)
    if column in _BOOL_COLUMNS:
        return 1 if value else 0
    return value


def _decode_ticket(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    ticket = dict(row)
    for column in _JSON_COLUMNS:
        raw = ticket.get(column)
        ticket[column] = json.loads(raw) if raw else None
    for column in _BOOL_COLUMNS:
        ticket[column] = bool(ticket.get(column))
    ticket["version"] = int(ticket["version"])
    return ticket


def _decode_evidence(row: Dict[str, Any]) -> Dict[str, Any]:
    item = dict(row)
    item["metadata"] = json.loads(item["metadata"]) if item.get("metadata") else {}
    item["immutable"] = bool(item.get("immutable"))
    return item


class TicketRepository:
    """Row access for tickets, their evidence and closeout artifacts."""

    def __init__(self, storage: StorageBackend):
        self._storage = storage

    def get(self, ticket_id: str, *, for_update: bool = False) -> Optional[Dict[str, Any]]:
        query = f"SELECT {', '.join(TICKET_COLUMNS)} FROM tickets WHERE id = ?"
        if for_update:
            query += self._storage.row_lock_clause()
        return _decode_ticket(self._storage.fetchone(query, (ticket_id,)))

    def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        now = to_iso()
        row = {column: None for column in TICKET_COLUMNS}
        row.update({key: value for key, value in fields.items() if key in _MUTABLE_COLUMNS})
        row["id"] = fields.get("id") or uuid.uuid4().hex
        row["version"] = 1
        row["created_at"] = now
        row["updated_at"] = now
        placeholders = ", ".join("?" for _ in TICKET_COLUMNS)
        self._storage.execute(
            f"INSERT INTO tickets ({', '.join(TICKET_COLUMNS)}) VALUES ({placeholders})",
            tuple(_encode(column, row[column]) for column in TICKET_COLUMNS),
        )
        return self.get(row["id"]) or {}

    def update(self, ticket_id: str, *, expected_version: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply ``changes`` only if the row still carries ``expected_version``.
        A stale version means a concurrent mutation committed first.
        """
        unknown = set(changes) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"unknown ticket columns: {sorted(unknown)}")
        columns = sorted(changes)
        assignments = [f"{column} = ?" for column in columns] + ["version = version + 1", "updated_at = ?"]
        params: List[Any] = [_encode(column, changes[column]) for column in columns]
        params.extend([to_iso(), ticket_id, int(expected_version)])
        updated = self._storage.execute(
            f"UPDATE tickets SET {', '.join(assignments)} WHERE id = ? AND version = ?",
            tuple(params),
        )
        if updated != 1:
            raise TicketVersionConflictError(
                f"Ticket {ticket_id} changed concurrently",
                details={"ticket_id": ticket_id, "expected_version": int(expected_version)},
            )
        return self.get(ticket_id) or {}

    def find_open_duplicate(self, identity_signature: str, *, since: str) -> Optional[str]:
        placeholders = ", ".join("?" for _ in TERMINAL_STATES)
        row = self._storage.fetchone(
            f"""
            SELECT id FROM tickets
            WHERE identity_signature = ?
              AND created_at >= ?
              AND state NOT IN ({placeholders})
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (identity_signature, since, *sorted(TERMINAL_STATES)),
        )
        return row["id"] if row else None

    def add_evidence(
        self,
        ticket_id: str,
        *,
        kind: str,
        uri: str,
        checksum: Optional[str],
        evidence_key: Optional[str],
        metadata: Dict[str, Any],
    ) -> Dict[str, Any]:
        evidence_id = uuid.uuid4().hex
        self._storage.execute(
            """
            INSERT INTO evidence_items (id, ticket_id, kind, uri, checksum, evidence_key, metadata, immutable, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (evidence_id, ticket_id, kind, uri, checksum, evidence_key, canonical_json(metadata or {}), to_iso()),
        )
        row = self._storage.fetchone(
            "SELECT id, ticket_id, kind, uri, checksum, evidence_key, metadata, immutable, created_at "
            "FROM evidence_items WHERE id = ?",
            (evidence_id,),
        )
        return _decode_evidence(row or {})

    def list_evidence(self, ticket_id: str) -> List[Dict[str, Any]]:
        rows = self._storage.fetchall(
            """
            SELECT id, ticket_id, kind, uri, checksum, evidence_key, metadata, immutable, created_at
            FROM evidence_items
            WHERE ticket_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (ticket_id,),
        )
        return [_decode_evidence(row) for row in rows]

    def seal_evidence(self, ticket_id: str) -> int:
        return self._storage.execute(
            "UPDATE evidence_items SET immutable = 1 WHERE ticket_id = ? AND immutable = 0",
            (ticket_id,),
        )

    def write_closeout_artifact(self, ticket_id: str, *, tool_name: str, closed_by: str) -> Dict[str, Any]:
        evidence = self.list_evidence(ticket_id)
        digest = sha256_json(
            [
                {"uri": item["uri"], "checksum": item.get("checksum"), "evidence_key": item.get("evidence_key")}
                for item in evidence
            ]
        )
        artifact = {
            "id": uuid.uuid4().hex,
            "ticket_id": ticket_id,
            "tool_name": tool_name,
            "closed_by": closed_by,
            "evidence_hash": digest,
            "evidence_count": len(evidence),
            "created_at": to_iso(),
        }
        self._storage.execute(
            """
            INSERT INTO closeout_artifacts (id, ticket_id, tool_name, closed_by, evidence_hash, evidence_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            tuple(artifact[key] for key in ("id", "ticket_id", "tool_name", "closed_by", "evidence_hash", "evidence_count", "created_at")),
        )
        return artifact

    def get_closeout_artifact(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.fetchone(
            """
            SELECT id, ticket_id, tool_name, closed_by, evidence_hash, evidence_count, created_at
            FROM closeout_artifacts WHERE ticket_id = ?
            """,
            (ticket_id,),
        )
