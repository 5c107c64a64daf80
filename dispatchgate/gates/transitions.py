from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from dispatchgate.errors import ConflictError, invalid_state_transition
from dispatchgate.policy.table import BypassRule, ToolPolicy


@dataclass(frozen=True)
class TransitionDecision:
    from_state: Optional[str]
    next_state: Optional[str]
    bypass_applied: bool = False

    @property
    def changes_state(self) -> bool:
        return self.next_state is not None and self.next_state != self.from_state


def _is_blank(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _bypass_claimed(rule: BypassRule, payload: Mapping[str, Any]) -> bool:
    return str(payload.get(rule.mode_field) or "").strip().upper() == rule.required_mode


def evaluate_bypass(rule: BypassRule, payload: Mapping[str, Any], actor_id: Optional[str]) -> None:
    """Fail closed when the bypass mode is claimed without everything it requires."""
    missing: List[str] = [name for name in rule.required_fields if _is_blank(payload.get(name))]
    if rule.require_actor_identity and _is_blank(actor_id):
        missing.append("actor_id")
    if missing:
        raise ConflictError(
            f"{rule.required_mode} requires {', '.join(missing)}",
            code="BYPASS_REQUIREMENTS_INCOMPLETE",
            details={"bypass_mode": rule.required_mode, "missing_fields": missing},
        )


def resolve_outcome(policy: ToolPolicy, payload: Mapping[str, Any]) -> Optional[str]:
    if policy.outcome_field is None:
        return policy.resulting_state
    selector = payload.get(policy.outcome_field)
    if selector is None:
        return policy.resulting_state
    target = policy.outcome_states.get(str(selector))
    if target is None or target not in policy.declared_results:
        raise ConflictError(
            f"{policy.outcome_field}={selector} is not a declared outcome of {policy.tool_name}",
            code="INVALID_STATE_TRANSITION",
            details={"tool_name": policy.tool_name, policy.outcome_field: selector},
        )
    return target


def validate_transition(
    policy: ToolPolicy,
    current_state: Optional[str],
    payload: Optional[Dict[str, Any]] = None,
    *,
    actor_id: Optional[str] = None,
) -> TransitionDecision:
    """
    Resolve the next state of ``policy`` applied to ``current_state``.

    The allowed-source set is enforced in both standard and bypass mode; a
    bypass only widens the set by its ``bypass_only_states`` and adds the
    rule's mandatory fields. ``next_state`` is None when the tool leaves the
    state unchanged.
    """
    body = payload or {}
    claimed = policy.bypass is not None and _bypass_claimed(policy.bypass, body)

    if not policy.creates_ticket:
        allowed = policy.allowed_from_states
        if allowed is not None and current_state not in allowed:
            raise invalid_state_transition(policy.tool_name, current_state)
        if policy.bypass is not None and current_state in policy.bypass.bypass_only_states and not claimed:
            raise invalid_state_transition(policy.tool_name, current_state)

    if claimed:
        evaluate_bypass(policy.bypass, body, actor_id)

    return TransitionDecision(
        from_state=None if policy.creates_ticket else current_state,
        next_state=resolve_outcome(policy, body),
        bypass_applied=claimed,
    )
