from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Compact JSON with recursively sorted keys; equal payloads serialize identically."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def sha256_json(value: Any) -> str:
    return sha256_text(canonical_json(value))


def payload_fingerprint(*, tool_name: str, ticket_id: Any, payload: Any) -> str:
    return sha256_json({"tool": tool_name, "ticket_id": ticket_id, "payload": payload or {}})
