from __future__ import annotations

from types import MappingProxyType
from typing import FrozenSet, Mapping

from dispatchgate.errors import DispatchError


DISPATCHER = "dispatcher"
ADMIN = "admin"
TECHNICIAN = "technician"
AUDIT = "audit"
SYSTEM = "system"
AGENT = "agent"
CUSTOMER = "customer"
APPROVER = "approver"
QA = "qa"
FINANCE = "finance"

CANONICAL_ROLES: FrozenSet[str] = frozenset(
    {DISPATCHER, ADMIN, TECHNICIAN, AUDIT, SYSTEM, AGENT, CUSTOMER, APPROVER, QA, FINANCE}
)

ROLE_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        **{role: role for role in CANONICAL_ROLES},
        "tech": TECHNICIAN,
        "dispatcher_admin": DISPATCHER,
        "assistant": DISPATCHER,
        "bot": DISPATCHER,
    }
)


class InvalidRoleError(DispatchError):
    status_code = 401
    default_code = "INVALID_AUTH_CLAIMS"


def normalize_role(raw: object) -> str:
    """Collapse a supplied role onto its canonical name; unknown roles raise InvalidRoleError."""
    key = str(raw or "").strip().lower()
    canonical = ROLE_ALIASES.get(key)
    if canonical is None:
        raise InvalidRoleError(
            f"Actor role '{raw}' is not recognized",
            details={"actor_role": raw},
        )
    return canonical
