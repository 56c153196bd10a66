"""
Token budget rate limiting.

Tracks a rolling token budget for gateway requests and suspends the caller
when the budget for the current window is exhausted.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 30000
DEFAULT_WINDOW_SECONDS = 60.0
# True request cost is only known after the response arrives.
DEFAULT_EXPECTED_TOKENS = 100


class CollectionInterrupted(Exception):
    """Raised when a rate limit or backoff wait is cut short by shutdown."""


@dataclass(frozen=True)
class BudgetState:
    """Snapshot of the limiter's budget window."""
    capacity: int
    remaining: int
    window_start: float
    window_length: float


class RateLimiter:
    """Rolling-window token budget.

    Never raises for budget conditions; ``reserve`` only delays. Not
    thread-safe: it is owned by the single collection worker.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self.capacity = capacity
        self.window_length = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._remaining = capacity
        self._window_start = clock()

    @property
    def state(self) -> BudgetState:
        return BudgetState(
            capacity=self.capacity,
            remaining=self._remaining,
            window_start=self._window_start,
            window_length=self.window_length,
        )

    def reserve(self, expected_tokens: int = DEFAULT_EXPECTED_TOKENS) -> None:
        """Charge ``expected_tokens`` against the budget, waiting if needed.

        If the window has elapsed the budget is refilled first. If the
        remaining budget is too small the caller sleeps until the window
        ends, and the waited period counts as a fresh window.

        Args:
            expected_tokens: Estimated cost of the upcoming request

        Raises:
            ValueError: If expected_tokens is negative
            CollectionInterrupted: If the wait was cut short; nothing is charged
        """
        if expected_tokens < 0:
            raise ValueError("expected_tokens cannot be negative")

        now = self._clock()
        if now - self._window_start >= self.window_length:
            self._reset(now)

        if self._remaining < expected_tokens:
            wait = self.window_length - (now - self._window_start)
            logger.warning("Rate limit reached, waiting %ds", math.ceil(wait))
            if self._sleep(wait):
                raise CollectionInterrupted()
            self._reset(self._clock())

        self._remaining = max(0, self._remaining - expected_tokens)

    def _reset(self, now: float) -> None:
        self._remaining = self.capacity
        self._window_start = now
