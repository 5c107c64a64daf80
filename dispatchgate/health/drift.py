"""
Compares the transition graph the tool catalog implies with the legality rows
the datastore enforces. Either side changing without the other is drift.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from dispatchgate.policy.table import TOOL_POLICIES, ToolPolicy, transition_edges
from dispatchgate.storage.base import StorageBackend
from dispatchgate.storage.schema import NULL_STATE_SENTINEL

Edge = Tuple[Optional[str], str]


def edge_name(edge: Edge) -> str:
    return f"{edge[0] or 'NULL'}->{edge[1]}"


def stored_transition_edges(storage: StorageBackend) -> Set[Edge]:
    rows = storage.fetchall("SELECT from_state, to_state FROM state_transition_rules")
    edges: Set[Edge] = set()
    for row in rows:
        source = row["from_state"]
        edges.add((None if source == NULL_STATE_SENTINEL else source, row["to_state"]))
    return edges


def _override_overlaps(policies: Mapping[str, ToolPolicy]) -> List[str]:
    normal = transition_edges(policies, include_overrides=False)
    failures: List[str] = []
    for name in sorted(policies):
        policy = policies[name]
        if not policy.override:
            continue
        single = transition_edges({name: policy})
        for edge in sorted(single & normal, key=edge_name):
            failures.append(f"override_overlap:{name}:{edge_name(edge)}")
    return failures


def detect_drift(
    storage: StorageBackend,
    policies: Optional[Mapping[str, ToolPolicy]] = None,
) -> Dict[str, Any]:
    catalog = policies if policies is not None else TOOL_POLICIES
    expected = transition_edges(catalog)
    stored = stored_transition_edges(storage)
    missing = sorted((edge_name(edge) for edge in expected - stored))
    extra = sorted((edge_name(edge) for edge in stored - expected))
    overlaps = _override_overlaps(catalog)
    healthy = not (missing or extra or overlaps)
    return {
        "status": "ok" if healthy else "unhealthy",
        "http_status": 200 if healthy else 503,
        "expected_edges": len(expected),
        "stored_edges": len(stored),
        "missing_edges": missing,
        "extra_edges": extra,
        "override_overlaps": overlaps,
        "failures": missing + extra + overlaps,
    }
