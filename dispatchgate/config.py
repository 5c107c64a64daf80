from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    normalized = str(raw).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except Exception:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except Exception:
        return default


def _env_str(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    raw = env.get(name)
    if raw is None:
        return default
    text = str(raw).strip()
    return text or default


def _env_csv(env: Mapping[str, str], name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = env.get(name)
    if raw is None:
        return default
    values = tuple(sorted({part.strip().lower() for part in str(raw).split(",") if part.strip()}))
    return values or default


@dataclass(frozen=True)
class DispatchSettings:
    """
    Runtime configuration, built once at startup and passed to every component.

    Nothing below reads the environment after construction; tests build their
    own instance (usually through ``DispatchSettings.for_sqlite``).
    """

    environment: str = "development"

    storage_backend: str = "sqlite"
    db_path: str = "data/dispatchgate.db"
    postgres_dsn: Optional[str] = None

    strict_evidence: bool = False
    evidence_allowed_schemes: Tuple[str, ...] = ("s3",)
    object_store_endpoint: Optional[str] = None
    evidence_head_timeout_seconds: float = 5.0

    incident_templates_path: Optional[str] = None
    risk_rules_path: Optional[str] = None

    intake_identity_confidence_min: int = 90
    intake_classification_confidence_min: int = 90
    intake_dedupe_window_hours: int = 24

    outbox_batch_limit: int = 20
    outbox_max_attempts: int = 6
    outbox_retry_base_seconds: int = 5
    outbox_retry_max_seconds: int = 300
    outbox_poll_seconds: float = 2.0
    outbox_scheduler_enabled: bool = False

    channel_enabled: bool = False
    channel_dry_run: bool = True
    channel_webhook_url: Optional[str] = None
    channel_timeout_seconds: float = 10.0

    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DispatchSettings":
        if environ is None:
            load_dotenv()
            environ = os.environ
        env = environ
        environment = (_env_str(env, "DISPATCHGATE_ENV", "development") or "development").lower()
        return cls(
            environment=environment,
            storage_backend=(_env_str(env, "DISPATCHGATE_STORAGE_BACKEND", "sqlite") or "sqlite").lower(),
            db_path=_env_str(env, "DISPATCHGATE_DB_PATH", "data/dispatchgate.db") or "data/dispatchgate.db",
            postgres_dsn=_env_str(env, "DISPATCHGATE_POSTGRES_DSN", _env_str(env, "DATABASE_URL")),
            # Production defaults to strict evidence verification; other profiles opt in.
            strict_evidence=_env_bool(env, "DISPATCHGATE_STRICT_EVIDENCE", environment == "production"),
            evidence_allowed_schemes=_env_csv(env, "DISPATCHGATE_EVIDENCE_SCHEMES", ("s3",)),
            object_store_endpoint=_env_str(env, "DISPATCHGATE_OBJECT_STORE_ENDPOINT"),
            evidence_head_timeout_seconds=_env_float(env, "DISPATCHGATE_EVIDENCE_HEAD_TIMEOUT_SECONDS", 5.0),
            incident_templates_path=_env_str(env, "DISPATCHGATE_INCIDENT_TEMPLATES_PATH"),
            risk_rules_path=_env_str(env, "DISPATCHGATE_RISK_RULES_PATH"),
            intake_identity_confidence_min=_env_int(env, "DISPATCHGATE_INTAKE_IDENTITY_CONFIDENCE_MIN", 90),
            intake_classification_confidence_min=_env_int(
                env, "DISPATCHGATE_INTAKE_CLASSIFICATION_CONFIDENCE_MIN", 90
            ),
            intake_dedupe_window_hours=_env_int(env, "DISPATCHGATE_INTAKE_DEDUPE_WINDOW_HOURS", 24),
            outbox_batch_limit=_env_int(env, "DISPATCHGATE_OUTBOX_BATCH_LIMIT", 20),
            outbox_max_attempts=_env_int(env, "DISPATCHGATE_OUTBOX_MAX_ATTEMPTS", 6),
            outbox_retry_base_seconds=_env_int(env, "DISPATCHGATE_OUTBOX_RETRY_BASE_SECONDS", 5),
            outbox_retry_max_seconds=_env_int(env, "DISPATCHGATE_OUTBOX_RETRY_MAX_SECONDS", 300),
            outbox_poll_seconds=_env_float(env, "DISPATCHGATE_OUTBOX_POLL_SECONDS", 2.0),
            outbox_scheduler_enabled=_env_bool(env, "DISPATCHGATE_OUTBOX_SCHEDULER_ENABLED", False),
            channel_enabled=_env_bool(env, "DISPATCHGATE_CHANNEL_ENABLED", False),
            channel_dry_run=_env_bool(env, "DISPATCHGATE_CHANNEL_DRY_RUN", True),
            channel_webhook_url=_env_str(env, "DISPATCHGATE_CHANNEL_WEBHOOK_URL"),
            channel_timeout_seconds=_env_float(env, "DISPATCHGATE_CHANNEL_TIMEOUT_SECONDS", 10.0),
            log_level=(_env_str(env, "DISPATCHGATE_LOG_LEVEL", "INFO") or "INFO").upper(),
            log_format=(_env_str(env, "DISPATCHGATE_LOG_FORMAT", "json") or "json").lower(),
        )

    @classmethod
    def for_sqlite(cls, db_path: str, **overrides) -> "DispatchSettings":
        return cls(storage_backend="sqlite", db_path=str(db_path), **overrides)

    def with_overrides(self, **overrides) -> "DispatchSettings":
        return replace(self, **overrides)
