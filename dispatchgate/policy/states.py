from __future__ import annotations

from enum import Enum
from typing import FrozenSet


class TicketState(str, Enum):
    NEW = "NEW"
    NEEDS_INFO = "NEEDS_INFO"
    TRIAGED = "TRIAGED"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    READY_TO_SCHEDULE = "READY_TO_SCHEDULE"
    SCHEDULE_PROPOSED = "SCHEDULE_PROPOSED"
    SCHEDULED = "SCHEDULED"
    PENDING_CUSTOMER_CONFIRMATION = "PENDING_CUSTOMER_CONFIRMATION"
    DISPATCHED = "DISPATCHED"
    ON_SITE = "ON_SITE"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    COMPLETED_PENDING_VERIFICATION = "COMPLETED_PENDING_VERIFICATION"
    VERIFIED = "VERIFIED"
    INVOICED = "INVOICED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


ALL_STATES: FrozenSet[str] = frozenset(state.value for state in TicketState)

TERMINAL_STATES: FrozenSet[str] = frozenset({TicketState.CLOSED.value, TicketState.CANCELLED.value})

NON_TERMINAL_STATES: FrozenSet[str] = ALL_STATES - TERMINAL_STATES


def states(*names: TicketState) -> FrozenSet[str]:
    return frozenset(name.value for name in names)
