"""
JSON file store for collection state.

Persists the full collection state to a dated snapshot and to
``latest.json``, which is the file the dashboard reads.
"""

import json
import logging
import os
import tempfile
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .models import CollectionState

logger = logging.getLogger(__name__)

LATEST_FILENAME = "latest.json"
SNAPSHOT_PREFIX = "token-data-"


def write_json_atomic(path: Path, payload: str) -> None:
    """Write ``payload`` to ``path`` through a temp file and rename.

    Readers either see the previous file or the complete new one.

    Raises:
        OSError: If the directory or file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class JsonStore:
    """Store for the collector's in-memory state.

    The state is serialized once per save and written to both files, so the
    snapshot and ``latest.json`` always agree.
    """

    def __init__(
        self,
        data_dir: Path,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize the store.

        Args:
            data_dir: Directory holding ``latest.json`` and dated snapshots
            clock: Returns the current time; used to date snapshots
        """
        self.data_dir = Path(data_dir)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def latest_path(self) -> Path:
        return self.data_dir / LATEST_FILENAME

    def snapshot_path(self, day: date) -> Path:
        return self.data_dir / f"{SNAPSHOT_PREFIX}{day.isoformat()}.json"

    def save(self, state: CollectionState) -> None:
        """Write the state to the dated snapshot and ``latest.json``.

        Raises:
            OSError: If either file cannot be written
        """
        payload = json.dumps(state.to_dict(), indent=2)
        today = self._clock().astimezone(timezone.utc).date()
        write_json_atomic(self.snapshot_path(today), payload)
        write_json_atomic(self.latest_path, payload)
        logger.debug("Saved %d session records to %s", len(state.sessions), self.latest_path)

    def load(self) -> CollectionState:
        """Load ``latest.json`` merged over an empty state.

        A missing file means "start fresh". A corrupt file is logged and
        also treated as empty.
        """
        raw = self.read_raw()
        if raw is None:
            return CollectionState()
        state = CollectionState.from_dict(raw)
        logger.info("Loaded existing data (%d session records)", len(state.sessions))
        return state

    def read_raw(self) -> Optional[Dict[str, Any]]:
        """Read ``latest.json`` as a plain dict, or None if unavailable."""
        path = self.latest_path
        if not path.exists():
            logger.info("No existing data found, starting fresh")
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read %s, starting fresh: %s", path, e)
            return None
        if not isinstance(raw, dict):
            logger.warning("Ignoring %s: top-level value is not an object", path)
            return None
        return raw
