from __future__ import annotations

import pytest

from dispatchgate.errors import ConflictError
from dispatchgate.gates.transitions import validate_transition
from dispatchgate.policy import TOOL_POLICIES
from dispatchgate.policy.states import ALL_STATES


def test_creation_tools_start_from_nothing():
    decision = validate_transition(TOOL_POLICIES["ticket.create"], None, {})
    assert decision.from_state is None
    assert decision.next_state == "NEW"
    assert decision.changes_state


def test_source_state_outside_allowed_set_conflicts():
    with pytest.raises(ConflictError) as exc:
        validate_transition(TOOL_POLICIES["billing.generate_invoice"], "IN_PROGRESS", {})
    assert exc.value.code == "INVALID_STATE_TRANSITION"
    assert exc.value.details["from_state"] == "IN_PROGRESS"


def test_outcome_field_selects_declared_result():
    qa = TOOL_POLICIES["qa.verify"]
    assert validate_transition(qa, "COMPLETED_PENDING_VERIFICATION", {"result": "PASS"}).next_state == "VERIFIED"
    assert validate_transition(qa, "COMPLETED_PENDING_VERIFICATION", {"result": "FAIL"}).next_state == "IN_PROGRESS"


def test_undeclared_outcome_is_rejected():
    with pytest.raises(ConflictError):
        validate_transition(TOOL_POLICIES["approval.decide"], "APPROVAL_REQUIRED", {"decision": "MAYBE"})


def test_tool_without_result_leaves_state_unchanged():
    decision = validate_transition(TOOL_POLICIES["closeout.add_evidence"], "IN_PROGRESS", {})
    assert decision.next_state is None
    assert not decision.changes_state


def test_bypass_only_source_requires_the_mode():
    dispatch = TOOL_POLICIES["assignment.dispatch"]
    with pytest.raises(ConflictError) as exc:
        validate_transition(dispatch, "TRIAGED", {"tech_id": "t-1", "dispatch_mode": "STANDARD"}, actor_id="d-1")
    assert exc.value.code == "INVALID_STATE_TRANSITION"


def test_bypass_still_checks_the_source_set():
    dispatch = TOOL_POLICIES["assignment.dispatch"]
    payload = {
        "tech_id": "t-1",
        "dispatch_mode": "EMERGENCY_BYPASS",
        "dispatch_rationale": "Flooding",
        "dispatch_confirmation": True,
    }
    with pytest.raises(ConflictError) as exc:
        validate_transition(dispatch, "NEW", payload, actor_id="d-1")
    assert exc.value.code == "INVALID_STATE_TRANSITION"


def test_bypass_without_actor_identity_fails_closed():
    dispatch = TOOL_POLICIES["assignment.dispatch"]
    payload = {
        "tech_id": "t-1",
        "dispatch_mode": "emergency_bypass",
        "dispatch_rationale": "   ",
        "dispatch_confirmation": True,
    }
    with pytest.raises(ConflictError) as exc:
        validate_transition(dispatch, "TRIAGED", payload, actor_id=None)
    assert exc.value.code == "BYPASS_REQUIREMENTS_INCOMPLETE"
    assert exc.value.details["missing_fields"] == ["dispatch_rationale", "actor_id"]


def test_complete_bypass_is_applied():
    dispatch = TOOL_POLICIES["assignment.dispatch"]
    payload = {
        "tech_id": "t-1",
        "dispatch_mode": "EMERGENCY_BYPASS",
        "dispatch_rationale": "Storefront open to the street",
        "dispatch_confirmation": True,
    }
    decision = validate_transition(dispatch, "TRIAGED", payload, actor_id="d-1")
    assert decision.bypass_applied is True
    assert decision.next_state == "DISPATCHED"


_STATEFUL_TOOLS = sorted(
    name
    for name, policy in TOOL_POLICIES.items()
    if policy.mutating and policy.ticket_scoped and not policy.creates_ticket
)


def _claiming_payload(policy):
    rule = policy.bypass
    payload = {rule.mode_field: rule.required_mode}
    payload.update({name: "filled" for name in rule.required_fields})
    return payload


@pytest.mark.parametrize("tool_name", _STATEFUL_TOOLS)
@pytest.mark.parametrize("state", sorted(ALL_STATES))
def test_every_tool_state_pair_follows_the_catalog(tool_name, state):
    policy = TOOL_POLICIES[tool_name]
    allowed = policy.allowed_from_states
    bypass_only = policy.bypass.bypass_only_states if policy.bypass is not None else frozenset()
    legal = allowed is None or state in allowed

    attempts = [({}, legal and state not in bypass_only)]
    if policy.bypass is not None:
        attempts.append((_claiming_payload(policy), legal))

    for payload, expected in attempts:
        if expected:
            decision = validate_transition(policy, state, payload, actor_id="d-1")
            assert decision.from_state == state
            assert decision.next_state is None or decision.next_state in policy.declared_results
        else:
            with pytest.raises(ConflictError) as exc:
                validate_transition(policy, state, payload, actor_id="d-1")
            assert exc.value.code == "INVALID_STATE_TRANSITION"
            assert exc.value.details["from_state"] == state
