from dispatchgate.gates.authorization import AuthorizationDecision, UnknownToolError, authorize, resolve_tool
from dispatchgate.gates.closeout import (
    CloseoutEvaluation,
    IncidentTemplateSet,
    evaluate_closeout_requirements,
    load_incident_templates,
)
from dispatchgate.gates.evidence import EvidenceReference, EvidenceReferenceVerifier
from dispatchgate.gates.risk import RiskProfile, classify_risk, load_risk_rules
from dispatchgate.gates.transitions import TransitionDecision, validate_transition

__all__ = [
    "AuthorizationDecision",
    "CloseoutEvaluation",
    "EvidenceReference",
    "EvidenceReferenceVerifier",
    "IncidentTemplateSet",
    "RiskProfile",
    "TransitionDecision",
    "UnknownToolError",
    "authorize",
    "classify_risk",
    "evaluate_closeout_requirements",
    "load_incident_templates",
    "load_risk_rules",
    "resolve_tool",
    "validate_transition",
]
