from __future__ import annotations

from typing import Any, Dict, List, Optional


class DispatchError(Exception):
    """
    Typed failure raised by a pipeline gate.

    ``code`` is the stable machine-readable reason; ``details`` become extra
    fields of the error body next to ``code`` and ``message``.
    """

    status_code = 409
    default_code = "DISPATCH_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details: Dict[str, Any] = dict(details or {})

    def to_body(
        self,
        *,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if request_id is not None:
            error["request_id"] = request_id
        if correlation_id is not None:
            error["correlation_id"] = correlation_id
        for key, value in self.details.items():
            error.setdefault(key, value)
        return {"error": error}


class InputError(DispatchError):
    status_code = 400
    default_code = "INVALID_REQUEST"


class AuthorizationError(DispatchError):
    status_code = 403
    default_code = "TOOL_ROLE_FORBIDDEN"


class NotFoundError(DispatchError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(DispatchError):
    status_code = 409
    default_code = "CONFLICT"


class IdempotencyRaceError(Exception):
    """A concurrent request with the same (actor, key) committed first."""


class OutboxConflictError(ConflictError):
    default_code = "OUTBOX_EVENT_CONFLICT"


class TicketVersionConflictError(ConflictError):
    default_code = "TICKET_VERSION_CONFLICT"


def missing_idempotency_key(tool_name: str) -> InputError:
    return InputError(
        f"Idempotency key is required for {tool_name}",
        code="MISSING_IDEMPOTENCY_KEY",
    )


def invalid_payload(tool_name: str, errors: List[Dict[str, Any]]) -> InputError:
    return InputError(
        f"Payload for {tool_name} failed validation",
        code="INVALID_REQUEST",
        details={"validation_errors": errors},
    )


def idempotency_mismatch() -> ConflictError:
    return ConflictError(
        "Idempotency key reuse with a different request payload is not allowed",
        code="IDEMPOTENCY_PAYLOAD_MISMATCH",
    )


def invalid_state_transition(tool_name: str, from_state: Optional[str]) -> ConflictError:
    return ConflictError(
        f"{tool_name} is not allowed from state {from_state}",
        code="INVALID_STATE_TRANSITION",
        details={"tool_name": tool_name, "from_state": from_state},
    )


def ticket_not_found(ticket_id: str) -> NotFoundError:
    return NotFoundError(f"Ticket {ticket_id} not found", code="TICKET_NOT_FOUND", details={"ticket_id": ticket_id})


def closeout_incomplete(
    message: str,
    *,
    requirement_code: str,
    **fields: Any,
) -> ConflictError:
    details: Dict[str, Any] = {"requirement_code": requirement_code}
    details.update(fields)
    return ConflictError(message, code="CLOSEOUT_REQUIREMENTS_INCOMPLETE", details=details)
