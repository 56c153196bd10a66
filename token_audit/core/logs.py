"""
Logging setup for the collector.

Writes the append-only collection log (``[timestamp] [LEVEL] message``)
and mirrors records to the console through rich.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

LOGGER_NAME = "token_audit"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"

_FILE_HANDLER_NAME = "token_audit.collection_log"
_CONSOLE_HANDLER_NAME = "token_audit.console"


class _UTCFormatter(logging.Formatter):
    """Formats ``asctime`` as an ISO-8601 UTC instant."""

    def formatTime(self, record, datefmt=None):
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def configure_logging(
    log_file: Optional[Path] = None,
    level: int = logging.INFO,
    console: bool = True
) -> logging.Logger:
    """Attach the collection log and console handlers to the package logger.

    Safe to call more than once; handlers are replaced, not duplicated.

    Args:
        log_file: Append-only collection log. Skipped when None.
        level: Level for the package logger
        console: Whether to also log to the terminal

    Returns:
        The package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if handler.get_name() in (_FILE_HANDLER_NAME, _CONSOLE_HANDLER_NAME):
            logger.removeHandler(handler)
            handler.close()

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.set_name(_FILE_HANDLER_NAME)
        file_handler.setFormatter(_UTCFormatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    if console:
        console_handler = RichHandler(show_path=False, rich_tracebacks=True)
        console_handler.set_name(_CONSOLE_HANDLER_NAME)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(console_handler)

    return logger
