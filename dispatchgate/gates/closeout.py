"""
Closeout requirement engine.

Incident templates are external YAML data; this module validates them into an
immutable template set and evaluates evidence/checklist completeness against
it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from dispatchgate.errors import DispatchError, closeout_incomplete


DEFAULT_TEMPLATES_PATH = Path(__file__).resolve().parent.parent / "policy" / "data" / "incident_templates.v1.yaml"
DEFAULT_TEMPLATE_VERSION = "1.0.0"
SIGNATURE_EVIDENCE_KEY = "signature_or_no_signature_reason"

READY = "READY"
MISSING_EVIDENCE = "MISSING_EVIDENCE"
MISSING_CHECKLIST = "MISSING_CHECKLIST"
MISSING_REQUIREMENTS = "MISSING_REQUIREMENTS"
TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
MISSING_SIGNATURE_CONFIRMATION = "MISSING_SIGNATURE_CONFIRMATION"


class IncidentTemplatePolicyError(DispatchError):
    status_code = 500
    default_code = "INVALID_TEMPLATE_SET"


@dataclass(frozen=True)
class IncidentTemplate:
    incident_type: str
    version: str
    required_evidence_keys: Tuple[str, ...]
    required_checklist_keys: Tuple[str, ...]


@dataclass(frozen=True)
class IncidentTemplateSet:
    schema_version: str
    templates: Mapping[str, IncidentTemplate]

    def get(self, incident_type: Any) -> Optional[IncidentTemplate]:
        return self.templates.get(normalize_incident_type(incident_type))


@dataclass(frozen=True)
class CloseoutEvaluation:
    ready: bool
    code: str
    incident_type: str
    template_version: Optional[str]
    missing_evidence_keys: List[str]
    missing_checklist_keys: List[str]
    waived_evidence_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "code": self.code,
            "incident_type": self.incident_type,
            "template_version": self.template_version,
            "missing_evidence_keys": list(self.missing_evidence_keys),
            "missing_checklist_keys": list(self.missing_checklist_keys),
            "waived_evidence_keys": list(self.waived_evidence_keys),
        }


def normalize_incident_type(value: Any) -> str:
    return str(value or "").strip().upper()


def _normalize_key_list(raw: Any, *, field_name: str, incident_type: str) -> Tuple[str, ...]:
    if not isinstance(raw, list) or not raw:
        raise IncidentTemplatePolicyError(
            f"{field_name} for {incident_type} must be a non-empty list",
            details={"incident_type": incident_type, "field": field_name},
        )
    keys: List[str] = []
    for item in raw:
        key = str(item or "").strip() if isinstance(item, str) else ""
        if not key:
            raise IncidentTemplatePolicyError(
                f"{field_name} for {incident_type} contains an empty or non-string key",
                details={"incident_type": incident_type, "field": field_name},
            )
        if key not in keys:
            keys.append(key)
    return tuple(keys)


def parse_incident_template_set(raw: Any) -> IncidentTemplateSet:
    if not isinstance(raw, dict):
        raise IncidentTemplatePolicyError("incident template set must be a mapping")
    schema_version = str(raw.get("schema_version") or "").strip()
    if not schema_version:
        raise IncidentTemplatePolicyError("incident template set requires schema_version")
    entries = raw.get("templates")
    if not isinstance(entries, list) or not entries:
        raise IncidentTemplatePolicyError("incident template set requires a non-empty templates list")

    templates: Dict[str, IncidentTemplate] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            raise IncidentTemplatePolicyError("each incident template must be a mapping")
        incident_type = normalize_incident_type(entry.get("incident_type"))
        if not incident_type:
            raise IncidentTemplatePolicyError("incident template requires incident_type")
        if incident_type in templates:
            raise IncidentTemplatePolicyError(
                f"duplicate incident template for {incident_type}",
                details={"incident_type": incident_type},
            )
        templates[incident_type] = IncidentTemplate(
            incident_type=incident_type,
            version=str(entry.get("version") or DEFAULT_TEMPLATE_VERSION).strip() or DEFAULT_TEMPLATE_VERSION,
            required_evidence_keys=_normalize_key_list(
                entry.get("required_evidence_keys"),
                field_name="required_evidence_keys",
                incident_type=incident_type,
            ),
            required_checklist_keys=_normalize_key_list(
                entry.get("required_checklist_keys"),
                field_name="required_checklist_keys",
                incident_type=incident_type,
            ),
        )
    return IncidentTemplateSet(schema_version=schema_version, templates=MappingProxyType(templates))


@lru_cache(maxsize=8)
def load_incident_templates(path: Optional[str] = None) -> IncidentTemplateSet:
    template_path = Path(path) if path else DEFAULT_TEMPLATES_PATH
    with template_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    return parse_incident_template_set(data)


def evidence_key_of(item: Any) -> Optional[str]:
    if isinstance(item, str):
        return item.strip() or None
    if not isinstance(item, Mapping):
        return None
    for candidate in (item.get("evidence_key"), item.get("key")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    metadata = item.get("metadata")
    if isinstance(metadata, Mapping):
        nested = metadata.get("evidence_key")
        if isinstance(nested, str) and nested.strip():
            return nested.strip()
    return None


def evaluate_closeout_requirements(
    template_set: IncidentTemplateSet,
    incident_type: Any,
    evidence_items: Iterable[Any],
    checklist_status: Optional[Mapping[str, Any]],
    *,
    no_signature_reason: Optional[str] = None,
    waived_evidence_keys: Iterable[str] = (),
) -> CloseoutEvaluation:
    normalized = normalize_incident_type(incident_type)
    template = template_set.get(normalized)
    if template is None:
        return CloseoutEvaluation(
            ready=False,
            code=TEMPLATE_NOT_FOUND,
            incident_type=normalized,
            template_version=None,
            missing_evidence_keys=[],
            missing_checklist_keys=[],
        )

    present = {key for key in (evidence_key_of(item) for item in evidence_items) if key}
    # A written reason for the missing signature stands in for the signature evidence.
    if str(no_signature_reason or "").strip():
        present.add(SIGNATURE_EVIDENCE_KEY)
    granted = set(waived_evidence_keys)
    waived = [key for key in template.required_evidence_keys if key not in present and key in granted]
    status = checklist_status or {}

    missing_evidence = sorted(
        key for key in template.required_evidence_keys if key not in present and key not in waived
    )
    missing_checklist = sorted(key for key in template.required_checklist_keys if status.get(key) is not True)

    if missing_evidence and missing_checklist:
        code = MISSING_REQUIREMENTS
    elif missing_evidence:
        code = MISSING_EVIDENCE
    elif missing_checklist:
        code = MISSING_CHECKLIST
    else:
        code = READY
    return CloseoutEvaluation(
        ready=code == READY,
        code=code,
        incident_type=normalized,
        template_version=template.version,
        missing_evidence_keys=missing_evidence,
        missing_checklist_keys=missing_checklist,
        waived_evidence_keys=sorted(waived),
    )


def enforce_closeout_requirements(evaluation: CloseoutEvaluation) -> None:
    if evaluation.ready:
        return
    requirement_code = evaluation.code
    if evaluation.missing_evidence_keys == [SIGNATURE_EVIDENCE_KEY] and not evaluation.missing_checklist_keys:
        requirement_code = MISSING_SIGNATURE_CONFIRMATION
    if requirement_code == TEMPLATE_NOT_FOUND:
        message = f"No closeout template for incident type '{evaluation.incident_type}'"
    elif requirement_code == MISSING_SIGNATURE_CONFIRMATION:
        message = "Customer signature or a no-signature reason is required"
    else:
        message = "Closeout requirements are incomplete"
    raise closeout_incomplete(
        message,
        requirement_code=requirement_code,
        incident_type=evaluation.incident_type,
        template_version=evaluation.template_version,
        missing_evidence_keys=list(evaluation.missing_evidence_keys),
        missing_checklist_keys=list(evaluation.missing_checklist_keys),
    )
