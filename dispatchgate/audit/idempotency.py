from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dispatchgate.errors import IdempotencyRaceError
from dispatchgate.storage.base import StorageBackend
from dispatchgate.utils.canonical import canonical_json
from dispatchgate.utils.clock import to_iso


PROCEED = "proceed"
REPLAY = "replay"
CONFLICT = "conflict"


@dataclass(frozen=True)
class StoredResponse:
    status_code: int
    body: Dict[str, Any]


@dataclass(frozen=True)
class IdempotencyClaim:
    state: str  # proceed | replay | conflict
    record: Optional[Dict[str, Any]] = None
    response: Optional[StoredResponse] = None


def _decode_response_json(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("stored idempotent response is not an object")
    return parsed


class IdempotencyStore:
    """
    Durable (actor_id, request_key) -> {fingerprint, response} map.

    Records are written once, inside the mutation's own transaction, and never
    updated; the table's triggers reject UPDATE and DELETE.
    """

    def __init__(self, storage: StorageBackend):
        self._storage = storage

    def _fetch(self, actor_id: str, request_key: str) -> Optional[Dict[str, Any]]:
        return self._storage.fetchone(
            """
            SELECT actor_id, request_key, tool_name, payload_fingerprint, status_code, response_json, created_at
            FROM idempotency_records
            WHERE actor_id = ? AND request_key = ?
            LIMIT 1
            """,
            (actor_id, request_key),
        )

    def admit(self, actor_id: str, request_key: str, fingerprint: str) -> IdempotencyClaim:
        existing = self._fetch(actor_id, request_key)
        if existing is None:
            return IdempotencyClaim(state=PROCEED)
        if existing.get("payload_fingerprint") != fingerprint:
            return IdempotencyClaim(state=CONFLICT, record=existing)
        response = StoredResponse(
            status_code=int(existing["status_code"]),
            body=_decode_response_json(existing.get("response_json")),
        )
        return IdempotencyClaim(state=REPLAY, record=existing, response=response)

    def record(
        self,
        *,
        actor_id: str,
        request_key: str,
        tool_name: str,
        fingerprint: str,
        status_code: int,
        body: Dict[str, Any],
    ) -> None:
        try:
            self._storage.execute(
                """
                INSERT INTO idempotency_records (
                    actor_id, request_key, tool_name, payload_fingerprint, status_code, response_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    actor_id,
                    request_key,
                    tool_name,
                    fingerprint,
                    int(status_code),
                    canonical_json(body),
                    to_iso(),
                ),
            )
        except Exception as exc:
            if self._storage.is_unique_violation(exc):
                raise IdempotencyRaceError(f"{actor_id}:{request_key}") from exc
            raise
