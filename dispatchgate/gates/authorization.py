from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from dispatchgate.errors import AuthorizationError, NotFoundError
from dispatchgate.policy.roles import normalize_role
from dispatchgate.policy.table import ToolPolicy, get_tool_policy


class UnknownToolError(NotFoundError):
    default_code = "UNKNOWN_TOOL"


@dataclass(frozen=True)
class AuthorizationDecision:
    policy: ToolPolicy
    actor_role: str


def resolve_tool(tool_name: str) -> ToolPolicy:
    policy = get_tool_policy(tool_name)
    if policy is None:
        raise UnknownToolError(f"Tool '{tool_name}' is not defined", details={"tool_name": tool_name})
    return policy


def authorize(actor_role: str, tool_name: str, ticket_state: Optional[str] = None) -> AuthorizationDecision:
    """
    Decide whether ``actor_role`` may invoke ``tool_name``.

    Unknown tools raise UNKNOWN_TOOL, unknown roles INVALID_AUTH_CLAIMS and a
    role missing from the tool's allowed set TOOL_ROLE_FORBIDDEN. The ticket
    state is only reported in the denial; source-state legality belongs to the
    transition validator.
    """
    policy = resolve_tool(tool_name)
    role = normalize_role(actor_role)
    if role not in policy.allowed_roles:
        raise AuthorizationError(
            f"Role '{role}' may not invoke {policy.tool_name}",
            code="TOOL_ROLE_FORBIDDEN",
            details={
                "tool_name": policy.tool_name,
                "actor_role": role,
                "allowed_roles": sorted(policy.allowed_roles),
                "ticket_state": ticket_state,
            },
        )
    return AuthorizationDecision(policy=policy, actor_role=role)
