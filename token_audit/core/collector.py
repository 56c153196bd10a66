"""
Collection orchestration.

Runs the source adapters in priority order and stops at the first one that
yields a usage record.

Failure handling:
1. Transient network failures - retried with exponential backoff
2. Protocol mismatches - no retry, fall through to the next source
3. Adapter bugs - logged with traceback, treated as "no data"
"""

import logging
import time
from typing import Any, Callable, List, Optional, Sequence

from .rate_limiter import CollectionInterrupted
from .sources import ProtocolMismatchError, SourceAdapter, TransientSourceError
from ..storage.models import UsageRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0


class Collector:
    """Tries each source adapter in order until one produces a record.

    Network adapters are wrapped in a bounded retry loop: attempt ``n``
    that fails transiently is followed by a ``backoff_base ** n`` second
    sleep, so the defaults wait 2s then 4s before the third attempt.
    """

    def __init__(
        self,
        adapters: Sequence[SourceAdapter],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        sleep: Callable[[float], Any] = time.sleep
    ):
        """Initialize the collector.

        Args:
            adapters: Source adapters in priority order
            max_attempts: Attempts per network adapter per cycle
            backoff_base: Base of the exponential backoff in seconds
            sleep: Sleep function; a truthy return means "interrupted"
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if backoff_base <= 0:
            raise ValueError("backoff_base must be > 0")

        self.adapters: List[SourceAdapter] = list(adapters)
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep
        self.last_attempts = 0

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base ** attempt

    def collect_once(self) -> Optional[UsageRecord]:
        """Run one collection pass over all adapters.

        Returns:
            The first record produced, or None if every source came up empty
        """
        for adapter in self.adapters:
            try:
                if adapter.network:
                    record = self._with_retry(adapter)
                else:
                    self.last_attempts = 1
                    record = adapter.try_collect()
            except CollectionInterrupted:
                logger.info("Collection interrupted by shutdown")
                return None
            except ProtocolMismatchError as e:
                logger.warning("Source %s unavailable: %s", adapter.name, e)
                continue
            except Exception:
                logger.exception("Source %s failed unexpectedly", adapter.name)
                continue

            if record is not None:
                logger.debug("Source %s yielded a record", adapter.name)
                return record

        logger.warning("No data sources yielded usage, skipping collection")
        return None

    def _with_retry(self, adapter: SourceAdapter) -> Optional[UsageRecord]:
        """Call a network adapter, retrying transient failures.

        Returns None once all attempts are exhausted.

        Raises:
            ProtocolMismatchError: Propagated immediately, never retried
            CollectionInterrupted: If a backoff sleep or rate limit wait was interrupted
        """
        for attempt in range(1, self.max_attempts + 1):
            self.last_attempts = attempt
            try:
                return adapter.try_collect()
            except TransientSourceError as e:
                if attempt == self.max_attempts:
                    logger.error(
                        "Source %s failed after %d attempts: %s",
                        adapter.name, self.max_attempts, e
                    )
                    return None
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Attempt %d failed, retrying in %gs: %s", attempt, delay, e
                )
                if self._sleep(delay):
                    raise CollectionInterrupted()
        return None
