"""
Daily archival of aggregate usage.

Once per day the previous day's bucket and the current agent, channel and
tool counters are frozen into an archive file. Archiving is additive: the
live state is never pruned.
"""

import json
import logging
from datetime import date, timedelta
from pathlib import Path
from typing import List

from ..storage.models import ArchiveRecord, CollectionState, TokenBucket
from ..storage.store import write_json_atomic

logger = logging.getLogger(__name__)


class Archiver:
    """Writes and reads ``archives/<YYYY-MM-DD>.json`` records."""

    def __init__(self, archive_dir: Path):
        self.archive_dir = Path(archive_dir)

    def archive_path(self, day: str) -> Path:
        return self.archive_dir / f"{day}.json"

    def archive_day(self, today: date, state: CollectionState) -> ArchiveRecord:
        """Archive the day before ``today``.

        Args:
            today: The day the archive runs on (normally at 00:00)
            state: Live collection state; read only

        Returns:
            The archive record that was written

        Raises:
            OSError: If the archive file cannot be written
        """
        day = (today - timedelta(days=1)).isoformat()
        bucket = state.daily.get(day)
        record = ArchiveRecord(
            date=day,
            token_usage=bucket.copy() if bucket else TokenBucket(),
            agents=dict(state.agents),
            channels=dict(state.channels),
            tools=dict(state.tools),
        )
        write_json_atomic(self.archive_path(day), json.dumps(record.to_dict(), indent=2))
        logger.info("Archived data for %s", day)
        return record

    def load_history(self, days: int = 7) -> List[ArchiveRecord]:
        """Load the most recent ``days`` archive records, oldest first.

        Unreadable archive files are skipped with a warning.
        """
        if days <= 0 or not self.archive_dir.is_dir():
            return []

        files = sorted(self.archive_dir.glob("*.json"))[-days:]
        history = []
        for path in files:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    history.append(ArchiveRecord.from_dict(json.load(f)))
            except (OSError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable archive %s: %s", path.name, e)
        return history
