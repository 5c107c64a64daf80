from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from dispatchgate.config import DispatchSettings
from dispatchgate.errors import ConflictError
from dispatchgate.gates.closeout import normalize_incident_type
from dispatchgate.utils.canonical import sha256_json


LOW_IDENTITY_CONFIDENCE = "LOW_IDENTITY_CONFIDENCE"
LOW_CLASSIFICATION_CONFIDENCE = "LOW_CLASSIFICATION_CONFIDENCE"
SOP_HANDOFF_REQUIRED = "SOP_HANDOFF_REQUIRED"

_NON_DIGITS = re.compile(r"\D+")


def phone_digits(value: Any) -> str:
    return _NON_DIGITS.sub("", str(value or ""))


def _lower(value: Any) -> str:
    return str(value or "").strip().lower()


def identity_signature(payload: Mapping[str, Any]) -> str:
    """Dedupe signature for blind intake. The free-text description is not part of it."""
    return sha256_json(
        {
            "account_id": str(payload.get("account_id") or "").strip(),
            "site_id": str(payload.get("site_id") or "").strip(),
            "customer_name": _lower(payload.get("customer_name")),
            "customer_phone": phone_digits(payload.get("customer_phone")),
            "customer_email": _lower(payload.get("customer_email")),
            "summary": _lower(payload.get("summary")),
            "incident_type": normalize_incident_type(payload.get("incident_type")),
        }
    )


@dataclass(frozen=True)
class IntakeAssessment:
    identity_confidence: int
    classification_confidence: int
    sop_handoff_acknowledged: bool
    failed_gates: List[str] = field(default_factory=list)

    @property
    def ready_to_schedule(self) -> bool:
        return not self.failed_gates

    @property
    def sop_handoff_required(self) -> bool:
        return bool(self.failed_gates)

    @property
    def sop_handoff_prompt(self) -> Optional[str]:
        if not self.failed_gates:
            return None
        reasons = ", ".join(self.failed_gates)
        return (
            "SOP handoff required before scheduling: confirm caller identity and incident "
            f"classification with the customer ({reasons})."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_confidence": self.identity_confidence,
            "classification_confidence": self.classification_confidence,
            "sop_handoff_acknowledged": self.sop_handoff_acknowledged,
            "failed_gates": list(self.failed_gates),
            "sop_handoff_required": self.sop_handoff_required,
            "sop_handoff_prompt": self.sop_handoff_prompt,
        }


def assess_intake(
    settings: DispatchSettings,
    *,
    identity_confidence: Optional[int],
    classification_confidence: Optional[int],
    sop_handoff_acknowledged: bool,
) -> IntakeAssessment:
    identity = int(identity_confidence or 0)
    classification = int(classification_confidence or 0)
    failed: List[str] = []
    if identity < settings.intake_identity_confidence_min:
        failed.append(LOW_IDENTITY_CONFIDENCE)
    if classification < settings.intake_classification_confidence_min:
        failed.append(LOW_CLASSIFICATION_CONFIDENCE)
    if not sop_handoff_acknowledged:
        failed.append(SOP_HANDOFF_REQUIRED)
    return IntakeAssessment(
        identity_confidence=identity,
        classification_confidence=classification,
        sop_handoff_acknowledged=bool(sop_handoff_acknowledged),
        failed_gates=failed,
    )


def enforce_ready_to_schedule(settings: DispatchSettings, assessment: IntakeAssessment) -> None:
    if assessment.ready_to_schedule:
        return
    code = assessment.failed_gates[0]
    messages = {
        LOW_IDENTITY_CONFIDENCE: "Caller identity confidence is below the scheduling threshold",
        LOW_CLASSIFICATION_CONFIDENCE: "Incident classification confidence is below the scheduling threshold",
        SOP_HANDOFF_REQUIRED: "SOP handoff must be acknowledged before scheduling",
    }
    raise ConflictError(
        messages[code],
        code=code,
        details={
            "failed_gates": list(assessment.failed_gates),
            "identity_confidence": assessment.identity_confidence,
            "identity_confidence_min": settings.intake_identity_confidence_min,
            "classification_confidence": assessment.classification_confidence,
            "classification_confidence_min": settings.intake_classification_confidence_min,
            "sop_handoff_prompt": assessment.sop_handoff_prompt,
        },
    )


def duplicate_intake(duplicate_ticket_id: str) -> ConflictError:
    return ConflictError(
        "An open ticket already exists for this caller and incident",
        code="DUPLICATE_INTAKE",
        details={"duplicate_ticket_id": duplicate_ticket_id},
    )
