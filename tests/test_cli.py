"""
Tests for the CLI interface.
"""
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from token_audit.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from token_audit.core.archiver import Archiver
from token_audit.storage.models import CollectionState, SessionInfo, TokenBucket, UsageRecord
from token_audit.storage.store import JsonStore

runner = CliRunner()


@pytest.fixture
def data_dir():
    """Temporary data directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def mock_service():
    """Mock the collector service used by collect and run."""
    with patch('token_audit.cli.main.CollectorService') as mock:
        mock.return_value.state = CollectionState()
        yield mock


@pytest.fixture(autouse=True)
def mock_logging():
    """Keep CLI runs from attaching handlers to the package logger."""
    with patch('token_audit.cli.main.configure_logging') as mock:
        yield mock


def sample_state() -> CollectionState:
    ts = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
    record = UsageRecord(
        tokens_in=100,
        tokens_out=200,
        context_tokens=10,
        timestamp=ts,
        session=SessionInfo(id="s-1", agent="claude-sonnet", channel="webchat", started_at=ts),
    )
    return CollectionState(
        sessions=[record],
        agents={"claude-sonnet": 1},
        channels={"webchat": 1},
        daily={"2024-01-01": TokenBucket(100, 200, 10)},
        hourly={"2024-01-01T10": TokenBucket(100, 200, 10)},
        total=TokenBucket(100, 200, 10),
    )


class TestCLI:
    """Test CLI commands."""

    def test_collect_reports_record(self, data_dir, mock_service):
        """Test a successful collection cycle."""
        state = sample_state()
        mock_service.return_value.run_cycle.return_value = state.sessions[0]
        mock_service.return_value.state = state

        result = runner.invoke(app, ["collect", "--data-dir", str(data_dir)])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Collected 100 in, 200 out" in result.output
        assert "claude-sonnet=1" in result.output
        mock_service.return_value.load.assert_called_once()

        config = mock_service.call_args[0][0]
        assert config.paths.data_dir == data_dir

    def test_collect_without_data(self, data_dir, mock_service):
        mock_service.return_value.run_cycle.return_value = None

        result = runner.invoke(app, ["collect", "--data-dir", str(data_dir)])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No new metrics collected this cycle" in result.output

    def test_collect_gateway_override(self, data_dir, mock_service):
        mock_service.return_value.run_cycle.return_value = None

        runner.invoke(app, ["collect", "-d", str(data_dir), "--gateway-url", "http://gw:9000"])

        config = mock_service.call_args[0][0]
        assert config.gateway.url == "http://gw:9000"

    def test_summary_shows_totals(self, data_dir):
        JsonStore(data_dir).save(sample_state())

        result = runner.invoke(app, ["summary", "--data-dir", str(data_dir)])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Token Usage" in result.output
        assert "310" in result.output
        assert "Sessions: 1" in result.output
        assert "webchat=1" in result.output

    def test_summary_without_data(self, data_dir):
        result = runner.invoke(app, ["summary", "--data-dir", str(data_dir)])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No token usage data found" in result.output

    def test_history_lists_archives(self, data_dir):
        archiver = Archiver(data_dir / "archives")
        archiver.archive_day(datetime(2024, 1, 2).date(), sample_state())
        archiver.archive_day(datetime(2024, 1, 3).date(), sample_state())

        result = runner.invoke(app, ["history", "--data-dir", str(data_dir), "--days", "5"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "2024-01-01" in result.output
        assert "2024-01-02" in result.output

    def test_history_without_archives(self, data_dir):
        result = runner.invoke(app, ["history", "--data-dir", str(data_dir)])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No archived days found" in result.output

    def test_archive_previous_day(self, data_dir):
        JsonStore(data_dir).save(sample_state())

        result = runner.invoke(app, ["archive", "--data-dir", str(data_dir), "--date", "2024-01-02"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Archived 2024-01-01: 310 tokens" in result.output
        assert (data_dir / "archives" / "2024-01-01.json").exists()

    def test_archive_invalid_date(self, data_dir):
        result = runner.invoke(app, ["archive", "--data-dir", str(data_dir), "--date", "yesterday"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid date" in result.output

    def test_missing_config_file_fails(self, data_dir):
        result = runner.invoke(app, ["summary", "--config", str(data_dir / "missing.yaml")])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Configuration error" in result.output

    def test_invalid_config_fails(self, data_dir, mock_service):
        config_path = data_dir / "config.yaml"
        config_path.write_text("rate_limit:\n  capacity: 0\n")

        result = runner.invoke(app, ["collect", "--config", str(config_path)])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "capacity must be > 0" in result.output
        mock_service.assert_not_called()

    def test_run_uses_service_exit_code(self, data_dir, mock_service):
        mock_service.return_value.run_forever.return_value = 0

        result = runner.invoke(app, ["run", "--data-dir", str(data_dir)])

        assert result.exit_code == EXIT_CODE_PASS
        mock_service.return_value.run_forever.assert_called_once()
