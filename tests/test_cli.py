"""Tests for the sharesync CLI in mock mode."""
import json

import pytest
from typer.testing import CliRunner

from sharesync.cli import app
from sharesync.core.config import SyncSettings, set_settings

runner = CliRunner()

CONFIG = """
pools:
  tank:
    datasets:
      media:
        shares:
          nfs: true
"""


@pytest.fixture
def mock_env(tmp_path, monkeypatch):
    """Mock backend, settings pointing into tmp_path."""
    monkeypatch.setenv("SHARESYNC_MOCK", "1")
    status_file = tmp_path / "status.json"
    set_settings(SyncSettings(status_file=str(status_file)))
    yield status_file
    set_settings(None)


def write_config(tmp_path, text=CONFIG):
    path = tmp_path / "sharesync.yml"
    path.write_text(text)
    return str(path)


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    assert "NFS share reconciliation" in result.stdout
    for command in ("reconcile", "drift", "run", "status"):
        assert command in result.stdout


def test_drift_reports_missing_pool(tmp_path, mock_env):
    result = runner.invoke(app, ["drift", "--config", write_config(tmp_path), "--log-file", str(tmp_path / "sharesync.log")])

    assert result.exit_code == 0
    assert "Summary" in result.stdout
    assert "dangerous" in result.stdout


def test_drift_clean(tmp_path, mock_env):
    result = runner.invoke(app, ["drift", "--config", write_config(tmp_path, "pools: {}\n"), "--log-file", str(tmp_path / "sharesync.log")])

    assert result.exit_code == 0
    assert "No drift detected" in result.stdout


def test_drift_missing_config(tmp_path, mock_env):
    result = runner.invoke(app, ["drift", "--config", str(tmp_path / "missing.yml"), "--log-file", str(tmp_path / "sharesync.log")])

    assert result.exit_code == 1
    assert "Config file not found" in result.stdout


def test_reconcile_dry_run(tmp_path, mock_env):
    result = runner.invoke(app, [
        "reconcile", "--dry-run", "--config", write_config(tmp_path),
        "--log-file", str(tmp_path / "sharesync.log"),
    ])

    assert result.exit_code == 0
    assert "DRY RUN" in result.stdout
    assert not mock_env.exists()


def test_reconcile_writes_status(tmp_path, mock_env):
    result = runner.invoke(app, [
        "reconcile", "--config", write_config(tmp_path, "pools: {}\n"),
        "--log-file", str(tmp_path / "sharesync.log"),
    ])

    assert result.exit_code == 0
    assert "No drift detected" in result.stdout
    data = json.loads(mock_env.read_text())
    assert data["backend"] == "dry-run"


def test_run_reads_notifications(tmp_path, mock_env):
    lines = "\n".join([
        json.dumps({
            "type": "modify",
            "datapath": "org.openmediavault.services.nfs",
            "payload": {"enabled": False},
        }),
        "not json",
        json.dumps({"type": "modify", "datapath": "org.example.unknown"}),
    ]) + "\n"

    result = runner.invoke(app, [
        "run", "--config", write_config(tmp_path, "pools: {}\n"),
        "--log-file", str(tmp_path / "sharesync.log"),
    ], input=lines)

    assert result.exit_code == 0
    assert "line 2" in result.stdout
    assert "line 3" in result.stdout
    data = json.loads(mock_env.read_text())
    assert data["service_enabled"] is False


class TestStatus:
    def test_no_status_yet(self, tmp_path):
        result = runner.invoke(app, ["status", "--status-file", str(tmp_path / "none.json")])

        assert result.exit_code == 0
        assert "No status recorded yet" in result.stdout

    def test_failed_key_exits_nonzero(self, tmp_path):
        path = tmp_path / "status.json"
        path.write_text(json.dumps({
            "backend": "zfs",
            "service_enabled": True,
            "updated_at": "2026-01-01T00:00:00",
            "keys": {
                "tank/media": {
                    "key": "tank/media", "state": "failed", "attempts": 5,
                    "last_error_class": "TransientBackendError",
                    "last_error": "dataset is busy",
                },
            },
            "pending": {"tank/new": 2},
            "drift": {"counts": {"auto-merge": 2}, "samples": []},
            "dropped_events": [{"key": "tank/docs"}],
        }))

        result = runner.invoke(app, ["status", "--status-file", str(path)])

        assert result.exit_code == 1
        assert "Startup drift: 2 auto-merge" in result.stdout
        assert "tank/media" in result.stdout
        assert "waiting for tank/new" in result.stdout
        assert "1 event(s) were dropped" in result.stdout

    def test_all_idle_exits_zero(self, tmp_path):
        path = tmp_path / "status.json"
        path.write_text(json.dumps({
            "backend": "zfs",
            "service_enabled": False,
            "keys": {"tank/media": {"state": "idle", "attempts": 0}},
        }))

        result = runner.invoke(app, ["status", "--status-file", str(path)])

        assert result.exit_code == 0
        assert "disabled" in result.stdout
