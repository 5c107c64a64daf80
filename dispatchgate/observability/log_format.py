from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from dispatchgate.config import DispatchSettings


_CONTEXT_FIELDS = ("tool_name", "ticket_id", "request_id", "correlation_id", "outbox_id", "error_code")


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field_name in _CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                payload[field_name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def configure_logging(settings: Optional[DispatchSettings] = None) -> None:
    settings = settings or DispatchSettings.from_env()
    level_value = getattr(logging, settings.log_level, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level_value)
    formatter: logging.Formatter
    if settings.log_format == "json":
        formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
        return

    for handler in root.handlers:
        handler.setFormatter(formatter)
