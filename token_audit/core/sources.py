"""
Usage data sources.

Each adapter tries to produce one usage record and returns None when it has
nothing to offer. Adapters raise only for transient network failures, which
the collector retries, or for their own bugs.

Sources, in default priority order:
1. Log directory scan - discovery only, log parsing is not implemented
2. Gateway HTTP probe - authenticated GET against the inference gateway
3. Transcript reader - newest JSONL session transcript on disk
4. Synthetic generator - opt-in fallback when nothing real is reachable
"""

import json
import logging
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

import requests

from .rate_limiter import RateLimiter
from ..storage.models import SessionInfo, UsageRecord, ensure_utc, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIRS = (
    "~/.openclaw/logs",
    "/var/log/openclaw",
    "/tmp/openclaw.log",
)
DEFAULT_SESSIONS_DIR = "~/.openclaw/agents/main/sessions"
DEFAULT_TRANSCRIPT_AGENT = "claude-haiku-4-5"
DEFAULT_TRANSCRIPT_CHANNEL = "main"
GATEWAY_CHANNEL = "gateway"

# Session start is estimated as timestamp - totalTokens * 5ms. This is a
# heuristic, not a measured duration.
SESSION_START_MS_PER_TOKEN = 5

SYNTHETIC_AGENTS = ("claude-sonnet", "claude-haiku", "claude-opus", "gpt-4", "gpt-3.5-turbo")
SYNTHETIC_CHANNELS = ("webchat", "discord", "slack", "api", "cli", "telegram")


class CollectionError(Exception):
    """Base class for failures while collecting usage."""


class TransientSourceError(CollectionError):
    """Timeout, refused connection or server error. Worth retrying."""


class ProtocolMismatchError(CollectionError):
    """Source answered with something other than JSON. Never retried."""


class SourceAdapter(Protocol):
    """Strategy for obtaining one usage record."""
    name: str
    network: bool

    def try_collect(self) -> Optional[UsageRecord]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_count(value: Any) -> int:
    """Coerce a JSON token count to a non-negative int (0 if unusable)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_usage_payload(payload: Any) -> Optional[Tuple[int, int, int]]:
    """Extract ``(tokens_in, tokens_out, context)`` from a gateway body.

    Recognized shapes:
        {"tokensIn": .., "tokensOut": .., "context"|"contextTokens": ..}
        {"usage": {"input": .., "output": .., "cacheRead": .., "cacheWrite": ..}}
        {"usage": {"prompt_tokens": .., "completion_tokens": ..}}
        {"tokens": {"in": .., "out": .., "context": ..}}

    Returns:
        Token counts, or None if the payload has no recognizable usage
    """
    if not isinstance(payload, dict):
        return None

    if _is_number(payload.get("tokensIn")) or _is_number(payload.get("tokensOut")):
        context = payload.get("context", payload.get("contextTokens"))
        return (
            _as_count(payload.get("tokensIn")),
            _as_count(payload.get("tokensOut")),
            _as_count(context),
        )

    usage = payload.get("usage")
    if isinstance(usage, dict):
        if _is_number(usage.get("input")) or _is_number(usage.get("output")):
            return (
                _as_count(usage.get("input")),
                _as_count(usage.get("output")),
                _as_count(usage.get("cacheRead")) + _as_count(usage.get("cacheWrite")),
            )
        if _is_number(usage.get("prompt_tokens")) or _is_number(usage.get("completion_tokens")):
            return (
                _as_count(usage.get("prompt_tokens")),
                _as_count(usage.get("completion_tokens")),
                0,
            )

    tokens = payload.get("tokens")
    if isinstance(tokens, dict) and (_is_number(tokens.get("in")) or _is_number(tokens.get("out"))):
        return (
            _as_count(tokens.get("in")),
            _as_count(tokens.get("out")),
            _as_count(tokens.get("context")),
        )

    return None


class LogScanAdapter:
    """Looks for gateway log directories.

    Discovery only: the gateway's log format is not parsed yet, so this
    adapter always returns None after reporting what it found.
    """

    name = "log-scan"
    network = False

    def __init__(self, log_dirs: Iterable[str] = DEFAULT_LOG_DIRS):
        self.log_dirs = [Path(p).expanduser() for p in log_dirs]

    def found_paths(self) -> List[Path]:
        return [path for path in self.log_dirs if path.exists()]

    def try_collect(self) -> Optional[UsageRecord]:
        for path in self.found_paths():
            logger.info("Found logs at: %s", path)
        return None


class GatewayProbeAdapter:
    """Queries the inference gateway's usage endpoint over HTTP."""

    name = "gateway-probe"
    network = True

    def __init__(
        self,
        base_url: str,
        endpoint: str,
        rate_limiter: RateLimiter,
        token: Optional[str] = None,
        timeout: float = 10.0,
        expected_tokens: int = 100,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.url = base_url.rstrip("/") + "/" + endpoint.lstrip("/")
        self.rate_limiter = rate_limiter
        self.token = token
        self.timeout = timeout
        self.expected_tokens = expected_tokens
        self.session = session or requests.Session()
        self._clock = clock

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def try_collect(self) -> Optional[UsageRecord]:
        """Fetch usage from the gateway.

        Returns:
            A usage record, or None if the gateway answered without usable data

        Raises:
            TransientSourceError: On timeout, connection failure or 5xx
            CollectionInterrupted: If the rate limit wait was cut short by shutdown
        """
        self.rate_limiter.reserve(self.expected_tokens)

        try:
            response = self.session.get(self.url, headers=self._headers(), timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientSourceError(f"Gateway request to {self.url} failed: {e}") from e

        if response.status_code >= 500:
            raise TransientSourceError(f"Gateway returned HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.warning("Gateway endpoint %s returned HTTP %d", self.url, response.status_code)
            return None

        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type.lower():
            logger.warning("Endpoint %s returned %s, expected JSON; skipping", self.url, content_type or "no content type")
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Endpoint %s returned an unparsable JSON body", self.url)
            return None

        counts = parse_usage_payload(payload)
        if counts is None:
            logger.info("Endpoint %s returned JSON without usage data", self.url)
            return None

        logger.info("Found token data at: %s", self.url)
        return self._to_record(payload, counts)

    def _to_record(self, payload: Dict[str, Any], counts: Tuple[int, int, int]) -> UsageRecord:
        now = self._clock()
        timestamp = now
        if isinstance(payload.get("timestamp"), str):
            try:
                timestamp = parse_timestamp(payload["timestamp"])
            except ValueError:
                timestamp = now

        session_data = payload.get("session")
        if not isinstance(session_data, dict):
            session_data = {}
        started = timestamp
        if isinstance(session_data.get("started"), str):
            try:
                started = parse_timestamp(session_data["started"])
            except ValueError:
                started = timestamp

        session = SessionInfo(
            id=str(session_data.get("id") or f"gateway-{int(timestamp.timestamp() * 1000)}"),
            agent=str(session_data.get("agent") or payload.get("model") or ""),
            channel=str(session_data.get("channel") or GATEWAY_CHANNEL),
            started_at=started,
            is_synthetic=False,
        )
        tokens_in, tokens_out, context = counts
        return UsageRecord(
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            context_tokens=context,
            timestamp=timestamp,
            session=session,
        )


class TranscriptAdapter:
    """Reads the newest usage entry from on-disk session transcripts.

    Transcripts are JSONL files, one JSON object per line. Lines are scanned
    from the end so the most recent usage wins; blank and malformed lines
    are skipped.
    """

    name = "transcript"
    network = False

    def __init__(
        self,
        sessions_dir: str = DEFAULT_SESSIONS_DIR,
        default_agent: str = DEFAULT_TRANSCRIPT_AGENT,
        channel: str = DEFAULT_TRANSCRIPT_CHANNEL
    ):
        self.sessions_dir = Path(sessions_dir).expanduser()
        self.default_agent = default_agent
        self.channel = channel
        self._last_seen: Optional[Tuple[str, datetime]] = None

    def mark_seen(self, record: UsageRecord) -> None:
        """Remember ``record`` so the same transcript entry is not re-read."""
        self._last_seen = (record.session.id, record.timestamp)

    def owns(self, record: UsageRecord) -> bool:
        """Whether ``record`` was read from a transcript in ``sessions_dir``."""
        session = record.session
        if session.is_synthetic or session.channel != self.channel:
            return False
        return (self.sessions_dir / f"{session.id}.jsonl").is_file()

    def latest_transcript(self) -> Optional[Path]:
        """Return the most recently modified ``*.jsonl`` file, if any."""
        if not self.sessions_dir.is_dir():
            return None
        latest = None
        latest_mtime = -1.0
        for path in self.sessions_dir.glob("*.jsonl"):
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if mtime > latest_mtime:
                latest, latest_mtime = path, mtime
        return latest

    def try_collect(self) -> Optional[UsageRecord]:
        path = self.latest_transcript()
        if path is None:
            return None

        logger.info("Reading session data from: %s", path.name)
        try:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as e:
            logger.warning("Transcript collection error: %s", e)
            return None

        for line in reversed(lines):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            record = self._parse_entry(entry, session_id=path.stem)
            if record is None:
                continue
            if self._last_seen == (record.session.id, record.timestamp):
                logger.debug("Newest transcript entry already collected")
                return None
            self.mark_seen(record)
            return record

        return None

    def _parse_entry(self, entry: Any, session_id: str) -> Optional[UsageRecord]:
        if not isinstance(entry, dict):
            return None

        message = entry.get("message")
        if not isinstance(message, dict):
            message = {}

        usage = message.get("usage")
        if not (isinstance(usage, dict) and _is_number(usage.get("totalTokens"))):
            usage = entry.get("usage")
            if not (isinstance(usage, dict) and _is_number(usage.get("totalTokens"))):
                return None

        try:
            timestamp = parse_timestamp(entry.get("timestamp"))
        except ValueError:
            return None

        started = timestamp - timedelta(milliseconds=usage["totalTokens"] * SESSION_START_MS_PER_TOKEN)
        agent = entry.get("model") or message.get("model") or self.default_agent
        return UsageRecord(
            tokens_in=_as_count(usage.get("input")),
            tokens_out=_as_count(usage.get("output")),
            context_tokens=_as_count(usage.get("cacheRead")) + _as_count(usage.get("cacheWrite")),
            timestamp=timestamp,
            session=SessionInfo(
                id=session_id,
                agent=str(agent),
                channel=self.channel,
                started_at=started,
                is_synthetic=False,
            ),
        )


class SyntheticAdapter:
    """Generates plausible usage when no real source is reachable.

    Business hours (09:00-17:00) produce heavier traffic. Records are
    flagged synthetic so the dashboard can tell them apart.
    """

    name = "synthetic"
    network = False

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.rng = rng or random.Random()
        self._clock = clock

    def try_collect(self) -> Optional[UsageRecord]:
        now = ensure_utc(self._clock())
        multiplier = 2.0 if 9 <= now.hour <= 17 else 0.5
        started = now - timedelta(seconds=self.rng.random() * 3600)
        logger.warning("Using synthetic data (no data sources accessible)")
        return UsageRecord(
            tokens_in=int((self.rng.random() * 800 + 200) * multiplier),
            tokens_out=int((self.rng.random() * 1500 + 500) * multiplier),
            context_tokens=int((self.rng.random() * 300 + 100) * multiplier),
            timestamp=now,
            session=SessionInfo(
                id=f"sim-session-{int(now.timestamp() * 1000)}",
                agent=self.rng.choice(SYNTHETIC_AGENTS),
                channel=self.rng.choice(SYNTHETIC_CHANNELS),
                started_at=started,
                is_synthetic=True,
            ),
        )
