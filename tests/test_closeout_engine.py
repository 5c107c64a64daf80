from __future__ import annotations

import pytest

from dispatchgate.errors import ConflictError
from dispatchgate.gates.closeout import (
    IncidentTemplatePolicyError,
    enforce_closeout_requirements,
    evaluate_closeout_requirements,
    evidence_key_of,
    load_incident_templates,
    parse_incident_template_set,
)
from tests.lifecycle_helpers import DOOR_WONT_LATCH_EVIDENCE, STANDARD_CHECKLIST


@pytest.fixture
def templates():
    return load_incident_templates()


def test_default_templates_cover_six_incident_types(templates):
    assert templates.schema_version == "2026-02-13"
    assert sorted(templates.templates) == [
        "AUTO_OPERATOR_FAULT",
        "CANNOT_SECURE_ENTRY",
        "DOOR_HANDLE_ISSUE",
        "DOOR_PANEL_FAILURE",
        "DOOR_WONT_LATCH",
        "WINDOW_GLAZING",
    ]
    for template in templates.templates.values():
        assert "signature_or_no_signature_reason" in template.required_evidence_keys
        assert len(set(template.required_evidence_keys)) == len(template.required_evidence_keys)

    assert templates.get("DOOR_WONT_LATCH").required_evidence_keys == (
        *DOOR_WONT_LATCH_EVIDENCE,
        "signature_or_no_signature_reason",
    )


def test_ready_when_everything_present(templates):
    evidence = [{"evidence_key": key} for key in DOOR_WONT_LATCH_EVIDENCE] + ["signature_or_no_signature_reason"]

    result = evaluate_closeout_requirements(templates, " door_wont_latch ", evidence, STANDARD_CHECKLIST)

    assert result.ready is True
    assert result.code == "READY"
    assert result.template_version == "1.0.0"


def test_no_signature_reason_stands_in_for_signature(templates):
    evidence = [{"evidence_key": key} for key in DOOR_WONT_LATCH_EVIDENCE]

    without = evaluate_closeout_requirements(templates, "DOOR_WONT_LATCH", evidence, STANDARD_CHECKLIST)
    with_reason = evaluate_closeout_requirements(
        templates, "DOOR_WONT_LATCH", evidence, STANDARD_CHECKLIST, no_signature_reason="Tenant refused"
    )

    assert without.missing_evidence_keys == ["signature_or_no_signature_reason"]
    assert with_reason.ready is True


def test_checklist_values_must_be_true(templates):
    evidence = list(DOOR_WONT_LATCH_EVIDENCE) + ["signature_or_no_signature_reason"]
    checklist = {**STANDARD_CHECKLIST, "resolution_status": "yes"}

    result = evaluate_closeout_requirements(templates, "DOOR_WONT_LATCH", evidence, checklist)

    assert result.code == "MISSING_CHECKLIST"
    assert result.missing_checklist_keys == ["resolution_status"]


def test_both_missing_reports_missing_requirements(templates):
    result = evaluate_closeout_requirements(templates, "WINDOW_GLAZING", [], {})

    assert result.code == "MISSING_REQUIREMENTS"
    with pytest.raises(ConflictError) as exc:
        enforce_closeout_requirements(result)
    assert exc.value.details["requirement_code"] == "MISSING_REQUIREMENTS"
    assert len(exc.value.details["missing_evidence_keys"]) == 4


def test_unknown_incident_type_has_no_template(templates):
    result = evaluate_closeout_requirements(templates, "ROOF_LEAK", [], {})

    assert result.code == "TEMPLATE_NOT_FOUND"
    with pytest.raises(ConflictError) as exc:
        enforce_closeout_requirements(result)
    assert exc.value.details["requirement_code"] == "TEMPLATE_NOT_FOUND"


def test_evidence_key_lookup_order():
    assert evidence_key_of({"evidence_key": "a", "key": "b"}) == "a"
    assert evidence_key_of({"key": "b"}) == "b"
    assert evidence_key_of({"metadata": {"evidence_key": "c"}}) == "c"
    assert evidence_key_of({"uri": "s3://x/y"}) is None
    assert evidence_key_of(42) is None


def test_template_set_rejects_duplicates_and_empty_lists():
    entry = {
        "incident_type": "door_wont_latch",
        "required_evidence_keys": ["a"],
        "required_checklist_keys": ["b"],
    }
    with pytest.raises(IncidentTemplatePolicyError):
        parse_incident_template_set({"schema_version": "1", "templates": [entry, dict(entry)]})
    with pytest.raises(IncidentTemplatePolicyError) as exc:
        parse_incident_template_set(
            {"schema_version": "1", "templates": [{**entry, "required_checklist_keys": []}]}
        )
    assert exc.value.code == "INVALID_TEMPLATE_SET"


def test_template_keys_keep_first_seen_order_and_version_defaults():
    parsed = parse_incident_template_set(
        {
            "schema_version": "1",
            "templates": [
                {
                    "incident_type": "gate_stuck",
                    "required_evidence_keys": ["z", "a", "z", "m", "a"],
                    "required_checklist_keys": ["done", "done"],
                }
            ],
        }
    )
    template = parsed.get("GATE_STUCK")
    assert template.required_evidence_keys == ("z", "a", "m")
    assert template.required_checklist_keys == ("done",)
    assert template.version == "1.0.0"


def test_waived_evidence_key_counts_as_present_only_when_missing(templates):
    evidence = [{"evidence_key": DOOR_WONT_LATCH_EVIDENCE[0]}, "signature_or_no_signature_reason"]

    result = evaluate_closeout_requirements(
        templates,
        "DOOR_WONT_LATCH",
        evidence,
        STANDARD_CHECKLIST,
        waived_evidence_keys=[DOOR_WONT_LATCH_EVIDENCE[0], DOOR_WONT_LATCH_EVIDENCE[1], "not_required_key"],
    )

    assert result.code == "MISSING_EVIDENCE"
    assert result.waived_evidence_keys == [DOOR_WONT_LATCH_EVIDENCE[1]]
    assert result.missing_evidence_keys == [DOOR_WONT_LATCH_EVIDENCE[2]]
