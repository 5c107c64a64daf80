from __future__ import annotations

from dispatchgate.config import DispatchSettings


def test_defaults_from_empty_environment():
    settings = DispatchSettings.from_env({})

    assert settings.environment == "development"
    assert settings.storage_backend == "sqlite"
    assert settings.strict_evidence is False
    assert settings.evidence_allowed_schemes == ("s3",)
    assert settings.intake_identity_confidence_min == 90
    assert settings.intake_dedupe_window_hours == 24
    assert settings.outbox_max_attempts == 6
    assert settings.channel_enabled is False
    assert settings.channel_dry_run is True


def test_production_turns_on_strict_evidence():
    assert DispatchSettings.from_env({"DISPATCHGATE_ENV": "Production"}).strict_evidence is True
    explicit = DispatchSettings.from_env({"DISPATCHGATE_ENV": "production", "DISPATCHGATE_STRICT_EVIDENCE": "false"})
    assert explicit.strict_evidence is False
    assert explicit.is_production


def test_parsing_of_lists_numbers_and_fallbacks():
    settings = DispatchSettings.from_env(
        {
            "DISPATCHGATE_EVIDENCE_SCHEMES": "S3, https ,,s3",
            "DISPATCHGATE_OUTBOX_MAX_ATTEMPTS": "3",
            "DISPATCHGATE_OUTBOX_BATCH_LIMIT": "-4",
            "DISPATCHGATE_OUTBOX_POLL_SECONDS": "not-a-number",
            "DISPATCHGATE_CHANNEL_ENABLED": "yes",
            "DISPATCHGATE_LOG_LEVEL": "debug",
            "DATABASE_URL": "postgresql://localhost/dispatch",
        }
    )

    assert settings.evidence_allowed_schemes == ("https", "s3")
    assert settings.outbox_max_attempts == 3
    assert settings.outbox_batch_limit == 20
    assert settings.outbox_poll_seconds == 2.0
    assert settings.channel_enabled is True
    assert settings.log_level == "DEBUG"
    assert settings.postgres_dsn == "postgresql://localhost/dispatch"


def test_overrides_return_new_instances(tmp_path):
    base = DispatchSettings.for_sqlite(str(tmp_path / "x.db"))
    tuned = base.with_overrides(outbox_max_attempts=2)

    assert tuned.outbox_max_attempts == 2
    assert base.outbox_max_attempts == 6
    assert tuned.db_path == base.db_path
