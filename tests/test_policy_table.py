from __future__ import annotations

from collections import Counter

import pytest

from dispatchgate.policy import TOOL_POLICIES, export_policy_table, get_tool_policy, transition_edges
from dispatchgate.policy.states import TERMINAL_STATES


MUTATING_TOOLS = {
    "ticket.create",
    "ticket.blind_intake",
    "ticket.triage",
    "schedule.propose",
    "schedule.confirm",
    "assignment.dispatch",
    "tech.check_in",
    "tech.complete",
    "tech.request_change",
    "closeout.candidate",
    "closeout.add_evidence",
    "closeout.evidence_exception",
    "qa.verify",
    "approval.decide",
    "billing.generate_invoice",
    "ticket.close",
    "ticket.force_close",
    "ticket.cancel",
    "dispatch.force_hold",
    "dispatch.force_unassign",
    "reopen_after_verification",
    "outbox.replay",
}
READ_TOOLS = {"ticket.get", "ticket.timeline", "closeout.list_evidence"}


def test_catalog_covers_every_tool():
    assert set(TOOL_POLICIES) == MUTATING_TOOLS | READ_TOOLS
    assert {name for name, policy in TOOL_POLICIES.items() if policy.mutating} == MUTATING_TOOLS


def test_catalog_is_read_only():
    with pytest.raises(TypeError):
        TOOL_POLICIES["ticket.create"] = TOOL_POLICIES["ticket.get"]  # type: ignore[index]


def test_routes_are_unique_per_method():
    routes = Counter((policy.method, policy.route) for policy in TOOL_POLICIES.values())
    assert [route for route, count in routes.items() if count > 1] == []


def test_mutating_tools_require_idempotency_keys():
    for policy in TOOL_POLICIES.values():
        assert policy.idempotency_required is policy.mutating, policy.tool_name


def test_lookup_strips_whitespace():
    assert get_tool_policy("  ticket.close ").tool_name == "ticket.close"
    assert get_tool_policy("ticket.unknown") is None


def test_transition_edges_start_from_creation_and_skip_self_edges():
    edges = transition_edges()

    assert (None, "NEW") in edges
    assert (None, "TRIAGED") in edges
    assert (None, "READY_TO_SCHEDULE") in edges
    assert ("TRIAGED", "DISPATCHED") in edges
    assert ("TRIAGED", "TRIAGED") not in edges
    assert ("IN_PROGRESS", "APPROVAL_REQUIRED") in edges
    assert ("APPROVAL_REQUIRED", "IN_PROGRESS") in edges
    assert all(source not in TERMINAL_STATES for source, _ in edges)


def test_override_edges_can_be_isolated():
    overrides = transition_edges(only_overrides=True)

    assert ("COMPLETED_PENDING_VERIFICATION", "CLOSED") in overrides
    assert ("IN_PROGRESS", "ON_HOLD") in overrides
    assert not overrides & transition_edges(include_overrides=False)


def test_export_includes_schema_and_bypass():
    exported = export_policy_table()

    dispatch = exported["assignment.dispatch"]
    assert dispatch["bypass"]["required_mode"] == "EMERGENCY_BYPASS"
    assert dispatch["bypass"]["bypass_only_states"] == ["TRIAGED"]
    assert dispatch["source_states"] == ["SCHEDULED", "TRIAGED"]
    assert "tech_id" in dispatch["payload_schema"]["properties"]
    assert exported["closeout.candidate"]["requirement_gates"] == ["risk", "closeout", "evidence_refs"]
    assert exported["ticket.get"]["mutating"] is False


_TICKET_READERS = {"dispatcher", "agent", "customer", "technician", "qa", "approver", "finance", "audit"}


@pytest.mark.parametrize(
    "tool_name, roles",
    [
        ("ticket.get", _TICKET_READERS),
        ("ticket.timeline", _TICKET_READERS),
        ("closeout.list_evidence", _TICKET_READERS - {"customer"}),
        ("ticket.cancel", {"dispatcher", "approver", "finance"}),
        ("ticket.force_close", {"dispatcher", "approver"}),
        ("dispatch.force_hold", {"dispatcher"}),
        ("dispatch.force_unassign", {"dispatcher"}),
        ("reopen_after_verification", {"dispatcher", "qa"}),
        ("outbox.replay", {"dispatcher", "finance", "admin", "system"}),
        ("tech.request_change", {"technician"}),
        ("closeout.evidence_exception", {"dispatcher", "qa", "approver"}),
        ("approval.decide", {"approver", "dispatcher"}),
        ("billing.generate_invoice", {"finance"}),
    ],
)
def test_role_sets_are_pinned(tool_name, roles):
    assert TOOL_POLICIES[tool_name].allowed_roles == frozenset(roles)


def test_change_request_tools_are_declared():
    exported = export_policy_table()

    request_change = exported["tech.request_change"]
    assert request_change["route"] == "/tickets/{ticket_id}/tech/request-change"
    assert request_change["source_states"] == ["IN_PROGRESS"]
    assert request_change["resulting_state"] == "APPROVAL_REQUIRED"

    exception = exported["closeout.evidence_exception"]
    assert exception["resulting_state"] is None
    assert exception["source_states"] == ["COMPLETED_PENDING_VERIFICATION", "INVOICED", "IN_PROGRESS", "VERIFIED"]
    assert "expires_at" in exception["payload_schema"]["properties"]

    assert exported["approval.decide"]["requirement_gates"] == ["change_request"]
    assert "IN_PROGRESS" in exported["approval.decide"]["alternate_states"]
