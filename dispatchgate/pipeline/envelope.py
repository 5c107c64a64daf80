from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class PipelineStage(str, Enum):
    RECEIVED = "RECEIVED"
    IDEMPOTENCY_CHECKED = "IDEMPOTENCY_CHECKED"
    AUTHORIZED = "AUTHORIZED"
    TRANSITION_VALIDATED = "TRANSITION_VALIDATED"
    REQUIREMENTS_EVALUATED = "REQUIREMENTS_EVALUATED"
    PERSISTED = "PERSISTED"
    RESPONDED = "RESPONDED"


class RequestEnvelope(BaseModel):
    """
    One tool invocation as handed over by the (already trusted) auth/router
    layer. ``request_key`` is the client's idempotency key.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tool_name: str
    actor_id: str = Field(min_length=1)
    actor_role: str
    actor_type: Literal["HUMAN", "AGENT", "SYSTEM"] = "HUMAN"
    request_key: Optional[str] = None
    correlation_id: Optional[str] = None
    trace_id: Optional[str] = None
    ticket_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class MutationResult:
    status_code: int
    body: Dict[str, Any]
    stage: PipelineStage
    replayed: bool = False
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def error_code(self) -> Optional[str]:
        error = self.body.get("error") if isinstance(self.body, dict) else None
        return error.get("code") if isinstance(error, dict) else None
