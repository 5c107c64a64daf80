from __future__ import annotations

import json

import pytest

from dispatchgate import __version__
from dispatchgate.cli import build_parser, main


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DISPATCHGATE_DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("DISPATCHGATE_LOG_FORMAT", "text")
    return tmp_path


def test_version(capsys):
    assert main(["version"]) == 0
    assert capsys.readouterr().out.strip() == f"dispatchgate {__version__}"


def test_export_policy_prints_catalog(capsys):
    assert main(["export-policy"]) == 0
    exported = json.loads(capsys.readouterr().out)
    assert exported["ticket.create"]["route"] == "/tickets"


def test_migrate_and_drift_check(cli_env, capsys):
    assert main(["migrate"]) == 0
    migrated = json.loads(capsys.readouterr().out)
    assert migrated["ok"] is True
    assert migrated["schema_version"]
    assert (cli_env / "cli.db").exists()

    assert main(["drift-check"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "ok"


def test_outbox_worker_reports_disabled_channel(cli_env, capsys):
    assert main(["outbox-worker", "--iterations", "1"]) == 0
    summaries = json.loads(capsys.readouterr().out)
    assert summaries[0]["reason"] == "CHANNEL_DISABLED"


def test_outbox_replay_of_unknown_event_fails(cli_env, capsys):
    assert main(["outbox-replay", "--outbox-id", "missing"]) == 1
    assert json.loads(capsys.readouterr().out)["error"]["code"] == "OUTBOX_EVENT_NOT_FOUND"


def test_subcommand_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
