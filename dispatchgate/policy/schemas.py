"""Payload shapes for every tool in the policy table."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


Priority = Literal["EMERGENCY", "URGENT", "ROUTINE"]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class EmptyPayload(_Payload):
    pass


class TicketCreatePayload(_Payload):
    account_id: str = Field(min_length=1)
    site_id: str = Field(min_length=1)
    summary: str = Field(min_length=1, max_length=500)
    description: Optional[str] = None
    incident_type: Optional[str] = None
    priority: Priority = "ROUTINE"
    nte_cents: Optional[int] = Field(default=None, ge=0)
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None


class BlindIntakePayload(_Payload):
    account_id: str = Field(min_length=1)
    site_id: str = Field(min_length=1)
    summary: str = Field(min_length=1, max_length=500)
    description: Optional[str] = None
    incident_type: str = Field(min_length=1)
    priority: Priority = "ROUTINE"
    nte_cents: Optional[int] = Field(default=None, ge=0)
    customer_name: str = Field(min_length=1)
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    identity_confidence: int = Field(ge=0, le=100)
    classification_confidence: int = Field(ge=0, le=100)
    sop_handoff_acknowledged: bool = False


class TriagePayload(_Payload):
    incident_type: str = Field(min_length=1)
    priority: Optional[Priority] = None
    nte_cents: Optional[int] = Field(default=None, ge=0)
    workflow_outcome: Optional[Literal["TRIAGED", "READY_TO_SCHEDULE", "APPROVAL_REQUIRED"]] = None
    ready_to_schedule: Optional[bool] = None
    requires_approval: Optional[bool] = None
    identity_confidence: Optional[int] = Field(default=None, ge=0, le=100)
    classification_confidence: Optional[int] = Field(default=None, ge=0, le=100)
    sop_handoff_acknowledged: Optional[bool] = None

    @model_validator(mode="after")
    def _resolve_outcome(self) -> "TriagePayload":
        # The boolean shorthands collapse onto workflow_outcome so only one field drives the result.
        if self.workflow_outcome is None:
            if self.requires_approval:
                self.workflow_outcome = "APPROVAL_REQUIRED"
            elif self.ready_to_schedule:
                self.workflow_outcome = "READY_TO_SCHEDULE"
        self.ready_to_schedule = None
        self.requires_approval = None
        return self


class ScheduleWindow(_Payload):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> "ScheduleWindow":
        if self.end <= self.start:
            raise ValueError("schedule window end must be after start")
        return self


class ScheduleProposePayload(_Payload):
    options: List[ScheduleWindow] = Field(min_length=1, max_length=10)


class ScheduleConfirmPayload(ScheduleWindow):
    pass


class AssignmentDispatchPayload(_Payload):
    tech_id: str = Field(min_length=1)
    dispatch_mode: Optional[Literal["STANDARD", "EMERGENCY_BYPASS"]] = None
    dispatch_rationale: Optional[str] = None
    dispatch_confirmation: Optional[bool] = None


class TechCheckInPayload(_Payload):
    tech_id: Optional[str] = None
    arrived_at: Optional[datetime] = None


class CompletionPayload(_Payload):
    checklist_status: Dict[str, bool] = Field(default_factory=dict)
    no_signature_reason: Optional[str] = None
    evidence_refs: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class AddEvidencePayload(_Payload):
    kind: str = Field(min_length=1)
    uri: str = Field(min_length=1)
    checksum: Optional[str] = None
    evidence_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QaVerifyPayload(_Payload):
    result: Literal["PASS", "FAIL"] = "PASS"
    notes: Optional[str] = None


class ApprovalDecidePayload(_Payload):
    decision: Literal["APPROVED", "DENIED"]
    notes: Optional[str] = None


class GenerateInvoicePayload(_Payload):
    invoice_reference: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)


class TicketClosePayload(_Payload):
    notes: Optional[str] = None


class ForceClosePayload(_Payload):
    override_code: str = Field(min_length=5)
    override_reason: str = Field(min_length=20)


class ReasonPayload(_Payload):
    reason: str = Field(min_length=1)


class OutboxReplayPayload(_Payload):
    outbox_id: str = Field(min_length=1)


class RequestChangePayload(_Payload):
    approval_type: Literal["NTE_INCREASE", "PROPOSAL"]
    reason: str = Field(min_length=1)
    amount_delta_cents: Optional[int] = Field(default=None, ge=0)
    evidence_refs: List[str] = Field(default_factory=list)


class EvidenceExceptionPayload(_Payload):
    exception_reason: str = Field(min_length=1)
    # Required evidence keys the exception waives at closeout.
    evidence_refs: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
