from dispatchgate.audit.idempotency import CONFLICT, PROCEED, REPLAY, IdempotencyClaim, IdempotencyStore
from dispatchgate.audit.ledger import AuditLog, TransitionLog

__all__ = [
    "AuditLog",
    "CONFLICT",
    "IdempotencyClaim",
    "IdempotencyStore",
    "PROCEED",
    "REPLAY",
    "TransitionLog",
]
