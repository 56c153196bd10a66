"""
Collector service lifecycle.

Owns the collection state and drives it on a schedule:
- a collection cycle, re-armed ``request_delay`` seconds after each cycle ends
- a daily archive at 00:00 UTC
- an hourly usage summary at minute 0

All jobs run on a single-worker scheduler pool and every state mutation
holds one lock, so there is exactly one writer.
"""

import logging
import signal
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from .aggregator import fold, hourly_summary
from .archiver import Archiver
from .collector import Collector
from .rate_limiter import RateLimiter
from .sources import (
    GatewayProbeAdapter,
    LogScanAdapter,
    SyntheticAdapter,
    TranscriptAdapter,
)
from token_audit.config.loader import CollectorConfig
from token_audit.storage.models import ArchiveRecord, CollectionState, TokenBucket, UsageRecord
from token_audit.storage.store import JsonStore

logger = logging.getLogger(__name__)

COLLECT_JOB_ID = "collect"
ARCHIVE_JOB_ID = "daily-archive"
SUMMARY_JOB_ID = "hourly-summary"


class ServiceState(Enum):
    """Lifecycle states of the collector service."""
    STOPPED = "stopped"
    RUNNING = "running"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_scheduler() -> BackgroundScheduler:
    """Scheduler whose jobs all run on one worker thread.

    Jobs queued behind a long cycle still run late instead of being dropped.
    """
    return BackgroundScheduler(
        executors={"default": ThreadPoolExecutor(max_workers=1)},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
        timezone=timezone.utc,
    )


class CollectorService:
    """Long-running token usage collector.

    Lifecycle is ``STOPPED -> RUNNING -> STOPPED``. Starting loads the
    persisted state, runs one collection immediately and arms the
    schedule; stopping waits for the in-flight job and forces a final save.
    """

    def __init__(
        self,
        config: CollectorConfig,
        collector: Optional[Collector] = None,
        store: Optional[JsonStore] = None,
        archiver: Optional[Archiver] = None,
        scheduler: Optional[Any] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()

        self.transcript: Optional[TranscriptAdapter] = None
        self.collector = collector or self._build_collector()
        self.store = store or JsonStore(config.paths.data_dir, clock=clock)
        self.archiver = archiver or Archiver(config.paths.archive_dir)
        self.scheduler = scheduler or build_scheduler()

        self.state = CollectionState()
        self.status = ServiceState.STOPPED

    def _interruptible_sleep(self, seconds: float) -> bool:
        """Sleep until ``seconds`` pass or a stop is requested.

        Returns:
            True if the sleep was cut short by a stop request
        """
        return self._stop_event.wait(max(0.0, seconds))

    def _build_collector(self) -> Collector:
        """Build the default adapter chain from configuration."""
        cfg = self.config
        rate_limiter = RateLimiter(
            capacity=cfg.rate_limit.capacity,
            window_seconds=cfg.rate_limit.window_seconds,
            sleep=self._interruptible_sleep,
        )
        self.transcript = TranscriptAdapter(sessions_dir=str(cfg.paths.sessions_dir))
        adapters = [
            LogScanAdapter(cfg.paths.log_dirs),
            GatewayProbeAdapter(
                base_url=cfg.gateway.url,
                endpoint=cfg.gateway.endpoint,
                rate_limiter=rate_limiter,
                token=cfg.gateway.token,
                timeout=cfg.gateway.timeout_seconds,
                expected_tokens=cfg.rate_limit.expected_tokens,
                clock=self._clock,
            ),
            self.transcript,
        ]
        if cfg.collection.allow_synthetic:
            adapters.append(SyntheticAdapter(clock=self._clock))

        return Collector(
            adapters,
            max_attempts=cfg.collection.max_attempts,
            backoff_base=cfg.collection.backoff_base,
            sleep=self._interruptible_sleep,
        )

    @property
    def running(self) -> bool:
        return self.status is ServiceState.RUNNING

    def load(self) -> CollectionState:
        """Replace the in-memory state with the persisted one."""
        state = self.store.load()
        with self._lock:
            self.state = state
        if self.transcript is not None:
            for record in reversed(state.sessions):
                if self.transcript.owns(record):
                    self.transcript.mark_seen(record)
                    break
        return state

    def start(self) -> bool:
        """Start collecting.

        Returns:
            False if the service was already running (the call is a no-op)
        """
        with self._lock:
            if self.status is ServiceState.RUNNING:
                logger.warning("Collection already running")
                return False
            self.status = ServiceState.RUNNING
        self._stop_event.clear()

        logger.info("Token collector started")
        self.load()
        if self.config.collection.max_sessions is None:
            logger.info("Session history is unbounded (collection.max_sessions not set)")

        self.run_cycle()

        self.scheduler.add_job(
            self.archive_daily,
            CronTrigger(hour=0, minute=0, timezone=timezone.utc),
            id=ARCHIVE_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.log_hourly_summary,
            CronTrigger(minute=0, timezone=timezone.utc),
            id=SUMMARY_JOB_ID,
            replace_existing=True,
        )
        self._schedule_next_cycle()
        self.scheduler.start()
        return True

    def _schedule_next_cycle(self) -> None:
        if not self.running:
            return
        run_at = _utcnow() + timedelta(seconds=self.config.collection.request_delay_seconds)
        self.scheduler.add_job(
            self._scheduled_cycle,
            DateTrigger(run_date=run_at, timezone=timezone.utc),
            id=COLLECT_JOB_ID,
            replace_existing=True,
        )

    def _scheduled_cycle(self) -> None:
        try:
            self.run_cycle()
        finally:
            self._schedule_next_cycle()

    def run_cycle(self) -> Optional[UsageRecord]:
        """Collect one record, fold it and persist the state.

        Never raises: a failed cycle is logged and skipped.
        """
        try:
            record = self.collector.collect_once()
        except Exception:
            logger.exception("Collection error")
            return None

        if record is None:
            return None

        with self._lock:
            fold(record, self.state, max_sessions=self.config.collection.max_sessions)
            self._persist()
        logger.info(
            "Collected: %d in, %d out, %d context",
            record.tokens_in, record.tokens_out, record.context_tokens
        )
        return record

    def _persist(self) -> bool:
        """Save the state; caller holds the lock. Disk errors are logged."""
        try:
            self.store.save(self.state)
            return True
        except OSError as e:
            logger.error("Data save error: %s", e)
            return False

    def archive_daily(self, today: Optional[datetime] = None) -> Optional[ArchiveRecord]:
        """Archive the previous UTC day."""
        now = today or self._clock()
        logger.info("Running daily data archival")
        with self._lock:
            try:
                return self.archiver.archive_day(now.astimezone(timezone.utc).date(), self.state)
            except OSError as e:
                logger.error("Archive error: %s", e)
                return None

    def log_hourly_summary(self, now: Optional[datetime] = None) -> Tuple[str, TokenBucket]:
        with self._lock:
            key, usage = hourly_summary(self.state, now or self._clock())
        logger.info(
            "Hourly summary (%s): %d in, %d out, %d context",
            key, usage.tokens_in, usage.tokens_out, usage.context_tokens
        )
        return key, usage

    def request_stop(self) -> None:
        """Ask the service to stop; interrupts rate limit and backoff waits."""
        self._stop_event.set()

    def shutdown(self) -> bool:
        """Stop the schedule and flush the state.

        Returns:
            False if the service was not running
        """
        with self._lock:
            if self.status is ServiceState.STOPPED:
                return False
            self.status = ServiceState.STOPPED

        logger.info("Shutting down token collector...")
        self._stop_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        with self._lock:
            self._persist()
        logger.info("Collector shutdown complete")
        return True

    def run_forever(self, poll_seconds: float = 1.0) -> int:
        """Run until SIGINT or SIGTERM, then shut down cleanly.

        Returns:
            Process exit code
        """
        def _handle_signal(signum, frame):
            logger.info("Received signal %s, shutting down...", signum)
            self.request_stop()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

        self.start()
        while not self._stop_event.wait(poll_seconds):
            pass
        self.shutdown()
        return 0

    def latest_data(self) -> Dict[str, Any]:
        with self._lock:
            return self.state.to_dict()

    def current_usage(self) -> TokenBucket:
        with self._lock:
            return self.state.total.copy()
