"""
Tests for the CLI interface.
"""
import json
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from conftest import (
    SONNET,
    FakeUsageProvider,
    assistant_line,
    iso,
    live_event,
    ms,
    reported_day,
    write_transcript,
)
from usage_reconciler.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from usage_reconciler.core.clock import DateRange
from usage_reconciler.core.pricing import BillingMode
from usage_reconciler.core.reconstruction import ReconstructionResult, ReconstructionStage
from usage_reconciler.storage.audit_store import AuditStore
from usage_reconciler.storage.repository import UsageRepository, initialize_schema

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, transcript_root):
    """Settings pointing every path into the test directory."""
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump({
        'database': {'path': str(tmp_path / "usage.db")},
        'transcripts': {'base_path': str(transcript_root)},
        'billing': {'credentials_path': str(tmp_path / "no-credentials.json")},
        'remotes': [{'id': 'build', 'host': 'build.local'}],
        'logging': {'level': 'WARNING'},
    }), encoding='utf-8')
    return str(path)


@pytest.fixture
def mock_reconstruct():
    with patch('usage_reconciler.cli.main.run_reconstruction') as mock:
        yield mock


@pytest.fixture
def mock_preview():
    with patch('usage_reconciler.cli.main.preview_reconstruct') as mock:
        yield mock


@pytest.fixture
def mock_provider():
    """Replace ccusage with a canned usage report."""
    provider = FakeUsageProvider([reported_day("2025-03-01", input_tokens=100, output_tokens=50, cost=0.00105)])
    with patch('usage_reconciler.cli.main.CcusageProvider', return_value=provider) as mock:
        mock.provider = provider
        yield mock


def _done(**kwargs):
    result = ReconstructionResult(**kwargs)
    result.stages = [ReconstructionStage.SCANNING, ReconstructionStage.DONE]
    return result


def _store_complete_event(db_path, start_time):
    return UsageRepository(db_path).insert(live_event(
        start_time,
        input_tokens=100, output_tokens=50, cache_read_tokens=0, cache_creation_tokens=0,
        anthropic_model=SONNET, anthropic_cost_usd=0.00105, maestro_cost_usd=0.00105,
        maestro_billing_mode=BillingMode.API,
    ))


class TestGeneral:
    """Test the top-level callback and init."""

    def test_no_command(self, tmp_path):
        result = runner.invoke(app, ["--db", str(tmp_path / "x.db")])
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_init(self, tmp_path):
        db_path = tmp_path / "new.db"
        result = runner.invoke(app, ["--db", str(db_path), "init"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert db_path.exists()

    def test_bad_config(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("budgets: {}\n", encoding='utf-8')
        result = runner.invoke(app, ["--config", str(path), "init"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading configuration" in result.output

    def test_missing_config(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "absent.yaml"), "init"])
        assert result.exit_code == EXIT_CODE_FAIL


class TestReconstructCommands:
    """Test reconstruct and preview."""

    def test_reconstruct_passes_options(self, config_file, mock_reconstruct):
        mock_reconstruct.return_value = _done(queries_found=3, queries_inserted=2)

        result = runner.invoke(app, [
            "--config", config_file, "reconstruct", "--no-local", "--remote",
            "--since", "2025-03-01", "--until", "2025-03-07",
        ])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Reconstruction Result" in result.output
        options = mock_reconstruct.call_args[0][0]
        assert not options.include_local
        assert options.include_remote
        assert options.date_range == DateRange("2025-03-01", "2025-03-07")
        assert [h.id for h in options.remote_hosts] == ["build"]

    def test_reconstruct_failure_exit_code(self, config_file, mock_reconstruct):
        failed = ReconstructionResult()
        failed.stages = [ReconstructionStage.SCANNING]
        mock_reconstruct.return_value = failed

        result = runner.invoke(app, ["--config", config_file, "reconstruct", "--no-local"])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_preview_json(self, config_file, tmp_path, mock_preview, mock_reconstruct):
        initialize_schema(str(tmp_path / "usage.db"))
        mock_preview.return_value = _done(queries_inserted=4, dry_run=True)

        result = runner.invoke(app, ["--config", config_file, "preview", "--json"])

        assert result.exit_code == EXIT_CODE_PASS
        assert json.loads(result.output)["queriesInserted"] == 4
        mock_reconstruct.assert_not_called()

    def test_preview_without_store(self, config_file, tmp_path, mock_preview):
        result = runner.invoke(app, ["--config", config_file, "preview"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Run 'init' first" in result.output
        assert not (tmp_path / "usage.db").exists()
        mock_preview.assert_not_called()

    def test_invalid_date(self, config_file, mock_reconstruct):
        result = runner.invoke(app, ["--config", config_file, "reconstruct", "--since", "yesterday"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid date range" in result.output
        mock_reconstruct.assert_not_called()

    def test_reconstruct_end_to_end(self, config_file, tmp_path, transcript_root):
        write_transcript(transcript_root, "-p", "s1", [assistant_line("a", iso(2025, 3, 1, 10))])

        result = runner.invoke(app, ["--config", config_file, "reconstruct", "--json"])

        assert result.exit_code == EXIT_CODE_PASS
        assert json.loads(result.output)["queriesInserted"] == 1
        assert UsageRepository(str(tmp_path / "usage.db")).get_by_uuid("a") is not None


class TestStats:
    """Test the stats command."""

    def test_empty(self, tmp_path):
        result = runner.invoke(app, ["--db", str(tmp_path / "usage.db"), "stats"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage recorded" in result.output

    def test_by_model(self, db_path):
        _store_complete_event(db_path, ms(2025, 3, 1, 10))

        result = runner.invoke(app, ["--db", db_path, "stats", "--since", "2025-03-01"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage by model" in result.output
        assert "Total" in result.output


class TestAuditCommands:
    """Test the audit command group."""

    def test_run(self, db_path, mock_provider):
        _store_complete_event(db_path, ms(2025, 3, 1, 10))

        result = runner.invoke(app, ["--db", db_path, "audit", "run", "--since", "2025-03-01"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Token match: 100.00%" in result.output
        assert mock_provider.provider.calls == [("2025-03-01", "2025-03-01")]
        assert len(AuditStore(db_path).list_snapshots()) == 1

    def test_run_json(self, config_file, mock_provider):
        result = runner.invoke(app, [
            "--config", config_file, "audit", "run", "--since", "2025-03-01", "--until", "2025-03-02", "--json",
        ])
        assert result.exit_code == EXIT_CODE_PASS
        data = json.loads(result.output)
        assert data["auditType"] == "manual"
        assert data["period"] == {"start": "2025-03-01", "end": "2025-03-02"}

    def test_run_failed_provider(self, db_path):
        failing = FakeUsageProvider(error="npx not found")
        with patch('usage_reconciler.cli.main.CcusageProvider', return_value=failing):
            result = runner.invoke(app, ["--db", db_path, "audit", "run", "--since", "2025-03-01"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "npx not found" in result.output

    def test_run_unknown_remote(self, config_file, mock_provider):
        result = runner.invoke(app, [
            "--config", config_file, "audit", "run", "--since", "2025-03-01", "--remote", "nope",
        ])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown remote" in result.output

    def test_run_with_remote(self, config_file, mock_provider):
        result = runner.invoke(app, [
            "--config", config_file, "audit", "run", "--since", "2025-03-01", "--no-local", "--remote", "build",
        ])
        assert result.exit_code == EXIT_CODE_PASS
        assert mock_provider.call_args.kwargs["target"].host == "build.local"

    def test_history_and_snapshots(self, db_path, mock_provider):
        runner.invoke(app, ["--db", db_path, "audit", "run", "--since", "2025-03-01"])

        history = runner.invoke(app, ["--db", db_path, "audit", "history", "-n", "5"])
        assert history.exit_code == EXIT_CODE_PASS
        assert "Audit history" in history.output

        outside = runner.invoke(app, [
            "--db", db_path, "audit", "snapshots", "--since", "2025-04-01", "--until", "2025-04-30",
        ])
        assert "No audits recorded" in outside.output

    def test_configure_and_status(self, db_path):
        result = runner.invoke(app, [
            "--db", db_path, "audit", "configure", "--daily", "--daily-time", "06:30", "--weekly-day", "5",
        ])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Audit schedule saved" in result.output
        assert AuditStore(db_path).get_audit_config()["dailyTime"] == "06:30"

        status = runner.invoke(app, ["--db", db_path, "audit", "status"])
        assert "Daily: on at 06:30" in status.output
        assert "Weekly: off on Friday" in status.output

    def test_configure_invalid(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "audit", "configure", "--daily-time", "25:00"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid schedule" in result.output

    def test_correct(self, db_path):
        event_id = _store_complete_event(db_path, ms(2025, 3, 1, 10))

        result = runner.invoke(app, ["--db", db_path, "audit", "correct", str(event_id)])
        assert result.exit_code == EXIT_CODE_PASS
        assert UsageRepository(db_path).get(event_id).corrected_at is not None

        missing = runner.invoke(app, ["--db", db_path, "audit", "correct", str(event_id), "999"])
        assert missing.exit_code == EXIT_CODE_FAIL
