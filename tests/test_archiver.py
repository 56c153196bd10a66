"""
Unit tests for daily archival.
"""

import json
import tempfile
from datetime import date
from pathlib import Path

from token_audit.core.archiver import Archiver
from token_audit.storage.models import CollectionState, TokenBucket


def sample_state() -> CollectionState:
    return CollectionState(
        agents={"claude-sonnet": 4},
        channels={"webchat": 3, "cli": 1},
        tools={"Read": 2},
        daily={
            "2024-01-01": TokenBucket(100, 200, 10),
            "2024-01-02": TokenBucket(5, 5, 5),
        },
        hourly={"2024-01-01T10": TokenBucket(100, 200, 10)},
        total=TokenBucket(105, 205, 15),
    )


class TestArchiveDay:
    """Test archiving the previous day."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.archiver = Archiver(Path(self.temp_dir) / "archives")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_archives_previous_day(self):
        record = self.archiver.archive_day(date(2024, 1, 2), sample_state())

        assert record.date == "2024-01-01"
        assert record.token_usage == TokenBucket(100, 200, 10)

        path = Path(self.temp_dir) / "archives" / "2024-01-01.json"
        assert json.loads(path.read_text()) == {
            "date": "2024-01-01",
            "tokenUsage": {"tokensIn": 100, "tokensOut": 200, "context": 10},
            "agents": {"claude-sonnet": 4},
            "channels": {"webchat": 3, "cli": 1},
            "tools": {"Read": 2},
        }

    def test_missing_day_archives_zeroes(self):
        record = self.archiver.archive_day(date(2024, 3, 1), sample_state())

        assert record.date == "2024-02-29"
        assert record.token_usage == TokenBucket()

    def test_archive_is_additive(self):
        """Test the live state is untouched by archiving."""
        state = sample_state()
        before = state.to_dict()

        record = self.archiver.archive_day(date(2024, 1, 2), state)
        record.agents["claude-sonnet"] = 99
        record.token_usage.tokens_in = 0

        assert state.to_dict() == before

    def test_load_history_returns_recent_days_in_order(self):
        state = sample_state()
        for day in range(2, 12):
            self.archiver.archive_day(date(2024, 1, day), state)

        history = self.archiver.load_history(days=3)

        assert [r.date for r in history] == ["2024-01-08", "2024-01-09", "2024-01-10"]

    def test_load_history_skips_unreadable_files(self):
        self.archiver.archive_day(date(2024, 1, 2), sample_state())
        (Path(self.temp_dir) / "archives" / "2024-01-05.json").write_text("{oops")

        history = self.archiver.load_history()

        assert [r.date for r in history] == ["2024-01-01"]

    def test_load_history_without_archives(self):
        assert self.archiver.load_history() == []
        assert self.archiver.load_history(days=0) == []
