from __future__ import annotations

import itertools
from typing import Any, Callable, Dict, Optional

import pytest

from dispatchgate.config import DispatchSettings
from dispatchgate.observability import internal_metrics
from dispatchgate.pipeline import MutationPipeline, MutationResult, RequestEnvelope
from dispatchgate.storage import create_storage_backend
from dispatchgate.storage.schema import init_db
from tests.lifecycle_helpers import count_rows


_AUTO_KEY = object()


@pytest.fixture(autouse=True)
def _reset_metrics():
    internal_metrics.reset()
    yield
    internal_metrics.reset()


@pytest.fixture
def settings(tmp_path) -> DispatchSettings:
    return DispatchSettings.for_sqlite(str(tmp_path / "dispatchgate.db"))


@pytest.fixture
def storage(settings):
    backend = create_storage_backend(settings)
    init_db(backend)
    return backend


@pytest.fixture
def pipeline(storage, settings) -> MutationPipeline:
    return MutationPipeline(storage, settings)


@pytest.fixture
def call(pipeline) -> Callable[..., MutationResult]:
    counter = itertools.count(1)

    def _call(
        tool_name: str,
        *,
        ticket_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        role: str = "dispatcher",
        actor_id: str = "dispatcher-1",
        actor_type: str = "HUMAN",
        key: Any = _AUTO_KEY,
    ) -> MutationResult:
        request_key = f"key-{next(counter)}" if key is _AUTO_KEY else key
        return pipeline.execute(
            RequestEnvelope(
                tool_name=tool_name,
                actor_id=actor_id,
                actor_role=role,
                actor_type=actor_type,
                request_key=request_key,
                ticket_id=ticket_id,
                payload=payload or {},
            )
        )

    return _call


@pytest.fixture
def create_ticket(call) -> Callable[..., Dict[str, Any]]:
    def _create(**overrides: Any) -> Dict[str, Any]:
        payload = {
            "account_id": "acct-1",
            "site_id": "site-9",
            "summary": "Front door will not latch",
            "incident_type": "door_wont_latch",
            "priority": "URGENT",
            "customer_name": "Dana Reyes",
            "customer_phone": "(555) 010-2000",
        }
        payload.update(overrides)
        result = call("ticket.create", payload=payload)
        assert result.status_code == 201, result.body
        return result.body

    return _create


@pytest.fixture
def ticket_in_progress(call, create_ticket) -> Callable[..., Dict[str, Any]]:
    """Drive a fresh ticket through scheduling and dispatch to IN_PROGRESS."""

    def _advance(**overrides: Any) -> Dict[str, Any]:
        ticket = create_ticket(**overrides)
        ticket_id = ticket["id"]
        steps = [
            ("ticket.triage", {"incident_type": ticket["incident_type"], "workflow_outcome": "READY_TO_SCHEDULE"}),
            (
                "schedule.propose",
                {"options": [{"start": "2026-03-02T09:00:00Z", "end": "2026-03-02T11:00:00Z"}]},
            ),
            ("schedule.confirm", {"start": "2026-03-02T09:00:00Z", "end": "2026-03-02T11:00:00Z"}),
            ("assignment.dispatch", {"tech_id": "tech-7"}),
        ]
        for tool_name, payload in steps:
            result = call(tool_name, ticket_id=ticket_id, payload=payload)
            assert result.ok, (tool_name, result.body)
        checked_in = call("tech.check_in", ticket_id=ticket_id, payload={}, role="tech", actor_id="tech-7")
        assert checked_in.ok, checked_in.body
        return checked_in.body

    return _advance


@pytest.fixture
def add_evidence(call) -> Callable[..., Dict[str, Any]]:
    def _add(ticket_id: str, evidence_key: str, *, uri: Optional[str] = None, checksum: str = "abc123") -> Dict[str, Any]:
        result = call(
            "closeout.add_evidence",
            ticket_id=ticket_id,
            role="technician",
            actor_id="tech-7",
            payload={
                "kind": "photo" if evidence_key.startswith("photo") else "note",
                "uri": uri or f"s3://evidence/{ticket_id}/{evidence_key}.bin",
                "checksum": checksum,
                "evidence_key": evidence_key,
            },
        )
        assert result.status_code == 201, result.body
        return result.body

    return _add


@pytest.fixture
def rows(storage) -> Callable[..., int]:
    def _rows(table: str, **where: Any) -> int:
        return count_rows(storage, table, **where)

    return _rows
