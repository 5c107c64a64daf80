from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from dispatchgate.server import create_app, trace_id_from_traceparent


TICKET = {
    "account_id": "acct-1",
    "site_id": "site-9",
    "summary": "Front door will not latch",
    "incident_type": "door_wont_latch",
    "customer_phone": "(555) 010-2000",
}


def _headers(key=None, role="dispatcher", **extra):
    headers = {"X-Actor-Id": "dispatcher-1", "X-Actor-Role": role}
    if key:
        headers["Idempotency-Key"] = key
    headers.update(extra)
    return headers


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def test_create_then_replay_over_http(client):
    created = client.post("/tickets", json=TICKET, headers=_headers("create-1", **{"X-Correlation-Id": "corr-1"}))
    assert created.status_code == 201, created.text
    assert created.json()["state"] == "NEW"
    assert created.headers["x-correlation-id"] == "corr-1"

    replayed = client.post("/tickets", json=TICKET, headers=_headers("create-1"))
    assert replayed.status_code == 201
    assert replayed.headers["idempotent-replayed"] == "true"
    assert replayed.json() == created.json()

    fetched = client.get(f"/tickets/{created.json()['id']}", headers=_headers(role="audit"))
    assert fetched.status_code == 200
    assert fetched.json()["id"] == created.json()["id"]


def test_header_errors(client):
    mismatch = client.post("/tickets", json=TICKET, headers=_headers("k-1", **{"X-Tool-Name": "ticket.close"}))
    assert mismatch.status_code == 400
    assert mismatch.json()["error"]["code"] == "TOOL_ROUTE_MISMATCH"

    anonymous = client.post("/tickets", json=TICKET, headers={"Idempotency-Key": "k-2"})
    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "INVALID_AUTH_CLAIMS"

    keyless = client.post("/tickets", json=TICKET, headers=_headers())
    assert keyless.status_code == 400
    assert keyless.json()["error"]["code"] == "MISSING_IDEMPOTENCY_KEY"

    not_json = client.post("/tickets", content=b"{nope", headers=_headers("k-3"))
    assert not_json.status_code == 400


def test_unknown_ticket_is_404(client):
    response = client.post(
        "/tickets/missing/triage",
        json={"incident_type": "DOOR_WONT_LATCH"},
        headers=_headers("k-1"),
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "TICKET_NOT_FOUND"


def test_health_and_metrics(client):
    client.post("/tickets", json=TICKET, headers=_headers("create-1"))

    health = client.get("/health")
    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "ok"
    assert body["drift"]["status"] == "ok"
    assert body["outbox_scheduler"]["running"] is False

    internal = client.get("/internal/metrics").json()["metrics"]
    assert internal["mutations_applied_total"] == 1

    text = client.get("/metrics").text
    assert 'dispatchgate_metric_total{metric="mutations_applied_total"} 1' in text


def test_health_reports_drift(client):
    client.app.state.runtime.storage.execute(
        "INSERT INTO state_transition_rules (from_state, to_state) VALUES (?, ?)", ("CANCELLED", "DISPATCHED")
    )

    health = client.get("/health")

    assert health.status_code == 503
    assert health.json()["drift"]["extra_edges"] == ["CANCELLED->DISPATCHED"]


def test_traceparent_parsing():
    assert trace_id_from_traceparent("00-4BF92F3577B34DA6A3CE929D0E0E4736-00f067aa0ba902b7-01") == (
        "4bf92f3577b34da6a3ce929d0e0e4736"
    )
    assert trace_id_from_traceparent("00-" + "0" * 32 + "-00f067aa0ba902b7-01") is None
    assert trace_id_from_traceparent("garbage") is None
