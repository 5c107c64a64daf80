from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dispatchgate.errors import ConflictError, DispatchError
from dispatchgate.gates.closeout import normalize_incident_type


DEFAULT_RISK_RULES_PATH = Path(__file__).resolve().parent.parent / "policy" / "data" / "risk_rules.v1.yaml"

RISK_LOW = "low"
RISK_HIGH = "high"


class RiskRuleError(DispatchError):
    status_code = 500
    default_code = "INVALID_RULE_SET"


class RiskCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str
    operator: Literal[">", ">=", "<", "<=", "==", "!=", "in", "not in"]
    value: Any


class RiskRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rule_id: str = Field(min_length=1)
    level: Literal["low", "high"]
    reason: str = Field(min_length=1)
    conditions: List[RiskCondition] = Field(min_length=1)


class RiskRuleSet(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: str = Field(min_length=1)
    default_level: Literal["low", "high"] = RISK_LOW
    rules: List[RiskRule] = Field(default_factory=list)


@dataclass(frozen=True)
class RiskProfile:
    level: str
    incident_type: str
    reasons: List[str] = field(default_factory=list)
    rule_ids: List[str] = field(default_factory=list)

    @property
    def blocks_automation(self) -> bool:
        return self.level == RISK_HIGH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "reasons": list(self.reasons),
            "incident_type": self.incident_type,
        }


def check_condition(actual: Any, operator: str, expected: Any) -> bool:
    if actual is None:
        return False
    try:
        if operator == "==":
            return actual == expected
        if operator == "!=":
            return actual != expected
        if operator == ">":
            return float(actual) > float(expected)
        if operator == ">=":
            return float(actual) >= float(expected)
        if operator == "<":
            return float(actual) < float(expected)
        if operator == "<=":
            return float(actual) <= float(expected)
        if operator == "in":
            return actual in expected
        if operator == "not in":
            return actual not in expected
    except (TypeError, ValueError):
        return False
    return False


def parse_risk_rules(raw: Any) -> RiskRuleSet:
    try:
        rule_set = RiskRuleSet.model_validate(raw)
    except ValidationError as exc:
        raise RiskRuleError(
            "risk rule set failed validation",
            details={"validation_errors": exc.errors(include_url=False)},
        ) from exc
    seen = set()
    for rule in rule_set.rules:
        if rule.rule_id in seen:
            raise RiskRuleError(f"duplicate risk rule {rule.rule_id}", details={"rule_id": rule.rule_id})
        seen.add(rule.rule_id)
    return rule_set


@lru_cache(maxsize=8)
def load_risk_rules(path: Optional[str] = None) -> RiskRuleSet:
    rules_path = Path(path) if path else DEFAULT_RISK_RULES_PATH
    with rules_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    return parse_risk_rules(data)


def risk_signals(ticket: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "incident_type": normalize_incident_type(ticket.get("incident_type")),
        "priority": ticket.get("priority"),
        "nte_cents": ticket.get("nte_cents"),
        "summary": str(ticket.get("summary") or "").strip().lower(),
    }


def classify_risk(rule_set: RiskRuleSet, ticket: Mapping[str, Any]) -> RiskProfile:
    """A rule triggers when all of its conditions hold; any triggered high rule makes the profile high."""
    signals = risk_signals(ticket)
    reasons: List[str] = []
    rule_ids: List[str] = []
    level = rule_set.default_level
    for rule in rule_set.rules:
        if all(check_condition(signals.get(c.field), c.operator, c.value) for c in rule.conditions):
            reasons.append(rule.reason)
            rule_ids.append(rule.rule_id)
            if rule.level == RISK_HIGH:
                level = RISK_HIGH
    return RiskProfile(
        level=level,
        incident_type=signals["incident_type"],
        reasons=reasons,
        rule_ids=rule_ids,
    )


def enforce_risk_gate(profile: RiskProfile) -> None:
    if not profile.blocks_automation:
        return
    raise ConflictError(
        "Automated closeout is blocked for this incident; manual review is required",
        code="MANUAL_REVIEW_REQUIRED",
        details={
            "requirement_code": "AUTOMATION_RISK_BLOCK",
            "risk_profile": profile.to_dict(),
        },
    )
