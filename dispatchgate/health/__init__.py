from dispatchgate.health.drift import detect_drift, edge_name, stored_transition_edges

__all__ = ["detect_drift", "edge_name", "stored_transition_edges"]
