from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dispatchgate.gates.transitions import TransitionDecision
from dispatchgate.pipeline.envelope import PipelineStage, RequestEnvelope
from dispatchgate.policy.table import ToolPolicy


@dataclass
class ToolContext:
    """Everything a gate or handler sees for one admitted, authorized request."""

    policy: ToolPolicy
    envelope: RequestEnvelope
    actor_role: str
    request_id: str
    correlation_id: str
    model: BaseModel
    payload: Dict[str, Any]
    fingerprint: str
    ticket: Optional[Dict[str, Any]] = None
    decision: Optional[TransitionDecision] = None
    next_state: Optional[str] = None
    # Last stage passed; an error raised now is reported against it.
    stage: PipelineStage = PipelineStage.AUTHORIZED
    # Facts produced by requirement gates (risk profile, intake assessment, closeout evaluation).
    facts: Dict[str, Any] = field(default_factory=dict)

    @property
    def ticket_id(self) -> Optional[str]:
        if self.ticket is not None:
            return self.ticket["id"]
        return self.envelope.ticket_id

    @property
    def current_state(self) -> Optional[str]:
        return self.ticket["state"] if self.ticket is not None else None

    @property
    def changes_state(self) -> bool:
        return self.next_state is not None and self.next_state != self.current_state


@dataclass
class Effect:
    """What a handler asks the orchestrator to persist."""

    ticket_fields: Dict[str, Any] = field(default_factory=dict)
    status_code: int = 200
    body: Optional[Dict[str, Any]] = None
    audit: Dict[str, Any] = field(default_factory=dict)
    audit_ticket_id: Optional[str] = None
