from dispatchgate.observability.internal_metrics import incr, reset, snapshot
from dispatchgate.observability.log_format import JsonLogFormatter, configure_logging

__all__ = [
    "JsonLogFormatter",
    "configure_logging",
    "incr",
    "reset",
    "snapshot",
]
