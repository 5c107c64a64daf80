from dispatchgate.policy.roles import ROLE_ALIASES, InvalidRoleError, normalize_role
from dispatchgate.policy.states import TERMINAL_STATES, TicketState
from dispatchgate.policy.table import (
    TOOL_POLICIES,
    BypassRule,
    GateRule,
    ToolPolicy,
    export_policy_table,
    get_tool_policy,
    transition_edges,
)

__all__ = [
    "BypassRule",
    "GateRule",
    "InvalidRoleError",
    "ROLE_ALIASES",
    "TERMINAL_STATES",
    "TOOL_POLICIES",
    "TicketState",
    "ToolPolicy",
    "export_policy_table",
    "get_tool_policy",
    "normalize_role",
    "transition_edges",
]
