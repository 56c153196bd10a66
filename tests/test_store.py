"""
Unit tests for the JSON store.

Tests snapshot/latest writes, loading, and tolerance of bad files.
"""

import json
import os
import tempfile
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from token_audit.core.aggregator import fold
from token_audit.storage.models import (
    CollectionState,
    SessionInfo,
    TokenBucket,
    UsageRecord,
    parse_timestamp,
)
from token_audit.storage.store import JsonStore, write_json_atomic


FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def populated_state() -> CollectionState:
    state = CollectionState()
    ts = parse_timestamp("2024-01-01T10:00:00.123456Z")
    fold(UsageRecord(
        tokens_in=100,
        tokens_out=200,
        context_tokens=10,
        timestamp=ts,
        session=SessionInfo(
            id="abc",
            agent="claude-haiku-4-5",
            channel="main",
            started_at=ts - timedelta(seconds=1.55),
        ),
    ), state)
    state.tools = {"Read": 3}
    return state


class TestJsonStore:
    """Test saving and loading collection state."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.data_dir = Path(self.temp_dir) / "data"
        self.store = JsonStore(self.data_dir, clock=lambda: FIXED_NOW)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_save_writes_snapshot_and_latest(self):
        """Test both files are written with identical content."""
        self.store.save(populated_state())

        latest = self.data_dir / "latest.json"
        snapshot = self.data_dir / "token-data-2024-01-01.json"
        assert latest.exists()
        assert snapshot.exists()
        assert latest.read_text() == snapshot.read_text()

        data = json.loads(latest.read_text())
        assert data["tokenUsage"]["daily"]["2024-01-01"] == {
            "tokensIn": 100, "tokensOut": 200, "context": 10
        }
        assert data["tokenUsage"]["hourly"]["2024-01-01T10"]["tokensOut"] == 200

    def test_save_leaves_no_temp_files(self):
        self.store.save(populated_state())
        assert sorted(p.name for p in self.data_dir.iterdir()) == [
            "latest.json", "token-data-2024-01-01.json"
        ]

    def test_round_trip_equality(self):
        """Test load(save(state)) == state field for field."""
        state = populated_state()
        self.store.save(state)

        loaded = self.store.load()

        assert loaded == state
        assert loaded.sessions[0].timestamp == state.sessions[0].timestamp

    def test_load_missing_file_starts_fresh(self):
        assert self.store.load() == CollectionState()

    def test_load_corrupt_file_starts_fresh(self):
        self.data_dir.mkdir(parents=True)
        (self.data_dir / "latest.json").write_text("{ not json")

        assert self.store.load() == CollectionState()

    def test_load_non_object_starts_fresh(self):
        self.data_dir.mkdir(parents=True)
        (self.data_dir / "latest.json").write_text("[1, 2, 3]")

        assert self.store.load() == CollectionState()

    def test_load_merges_over_empty_state(self):
        """Test partial files keep defaults for missing keys."""
        self.data_dir.mkdir(parents=True)
        (self.data_dir / "latest.json").write_text(json.dumps({
            "agents": {"gpt-4": 3},
            "tokenUsage": {"total": {"tokensIn": 5, "tokensOut": 6, "context": 7}},
        }))

        state = self.store.load()

        assert state.agents == {"gpt-4": 3}
        assert state.total == TokenBucket(5, 6, 7)
        assert state.sessions == []
        assert state.daily == {}

    @pytest.mark.parametrize("document", [
        '{"sessions": 5}',
        '{"sessions": {"id": "abc"}}',
        '{"tokenUsage": {"total": {"tokensIn": "abc"}}}',
        '{"tokenUsage": {"daily": {"2024-01-01": {"tokensIn": [1]}}}}',
        '{"agents": {"a": Infinity}}',
        '{"tokenUsage": {"hourly": {"2024-01-01T10": {"context": NaN}}}}',
        '{"sessions": [{"timestamp": "2024-01-01T10:00:00Z", "tokensIn": 1e400}]}',
    ])
    def test_load_wrong_shape_is_not_fatal(self, document):
        """Test valid JSON with the wrong shape still loads."""
        self.data_dir.mkdir(parents=True)
        (self.data_dir / "latest.json").write_text(document)

        state = self.store.load()

        assert state.sessions == []
        assert state.agents == {}
        assert state.total == TokenBucket()
        assert all(bucket == TokenBucket() for bucket in state.daily.values())
        assert all(bucket == TokenBucket() for bucket in state.hourly.values())

    def test_load_keeps_valid_counters_next_to_bad_ones(self):
        self.data_dir.mkdir(parents=True)
        (self.data_dir / "latest.json").write_text(
            '{"agents": {"a": Infinity, "b": 2, "c": "x", "d": true},'
            ' "tokenUsage": {"total": {"tokensIn": 5, "tokensOut": "abc", "context": 7}}}'
        )

        state = self.store.load()

        assert state.agents == {"b": 2}
        assert state.total == TokenBucket(5, 0, 7)

    def test_snapshot_path(self):
        path = self.store.snapshot_path(date(2024, 2, 29))
        assert path.name == "token-data-2024-02-29.json"

    def test_save_failure_raises_os_error(self):
        """Test disk errors surface to the caller."""
        blocker = Path(self.temp_dir) / "blocker"
        blocker.write_text("a file, not a directory")
        store = JsonStore(blocker / "data", clock=lambda: FIXED_NOW)

        with pytest.raises(OSError):
            store.save(populated_state())


class TestWriteJsonAtomic:
    """Test atomic file replacement."""

    def test_replaces_existing_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "latest.json"
            path.write_text("old")

            write_json_atomic(path, '{"new": true}')

            assert json.loads(path.read_text()) == {"new": True}
            assert os.listdir(temp_dir) == ["latest.json"]
