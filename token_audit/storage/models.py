"""
Data models for storage layer.

Defines usage records, aggregate buckets and the collection state that is
persisted to ``latest.json`` and read back by the dashboard.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts the ``Z`` suffix written by JavaScript clients. Naive values
    are interpreted as UTC.

    Raises:
        ValueError: If the value is not a valid ISO-8601 timestamp
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with a ``Z`` suffix."""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class SessionInfo:
    """Identity of the session a usage record belongs to."""
    id: str
    agent: str
    channel: str
    started_at: datetime
    is_synthetic: bool = False

    def __post_init__(self):
        object.__setattr__(self, "started_at", ensure_utc(self.started_at))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent": self.agent,
            "channel": self.channel,
            "started": format_timestamp(self.started_at),
            "simulated": self.is_synthetic,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback_start: datetime) -> "SessionInfo":
        started = data.get("started")
        return cls(
            id=str(data.get("id") or ""),
            agent=str(data.get("agent") or ""),
            channel=str(data.get("channel") or ""),
            started_at=parse_timestamp(started) if started else fallback_start,
            is_synthetic=bool(data.get("simulated", False)),
        )


@dataclass(frozen=True)
class UsageRecord:
    """Immutable observation of token consumption.

    Produced once by a source adapter and folded once into the collection
    state. Token counts are unsigned.
    """
    tokens_in: int
    tokens_out: int
    context_tokens: int
    timestamp: datetime
    session: SessionInfo

    def __post_init__(self):
        """Validate token counts are non-negative integers."""
        for name in ("tokens_in", "tokens_out", "context_tokens"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
            if value < 0:
                raise ValueError(f"{name} cannot be negative")
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    @property
    def total_tokens(self) -> int:
        """Total tokens observed (in + out + context)."""
        return self.tokens_in + self.tokens_out + self.context_tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "tokensIn": self.tokens_in,
            "tokensOut": self.tokens_out,
            "context": self.context_tokens,
            "session": self.session.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        """Build a record from its JSON form.

        Raises:
            ValueError: If the entry is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("Usage record must be an object")
        timestamp = parse_timestamp(data.get("timestamp"))
        session_data = data.get("session") or {}
        if not isinstance(session_data, dict):
            raise ValueError("'session' must be an object")
        return cls(
            tokens_in=int(data.get("tokensIn") or 0),
            tokens_out=int(data.get("tokensOut") or 0),
            context_tokens=int(data.get("context") or 0),
            timestamp=timestamp,
            session=SessionInfo.from_dict(session_data, fallback_start=timestamp),
        )


@dataclass
class TokenBucket:
    """Token counters for one aggregation key (hour, day or total)."""
    tokens_in: int = 0
    tokens_out: int = 0
    context_tokens: int = 0

    def add(self, record: UsageRecord) -> None:
        self.tokens_in += record.tokens_in
        self.tokens_out += record.tokens_out
        self.context_tokens += record.context_tokens

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out + self.context_tokens

    def copy(self) -> "TokenBucket":
        return TokenBucket(self.tokens_in, self.tokens_out, self.context_tokens)

    def to_dict(self) -> Dict[str, int]:
        return {
            "tokensIn": self.tokens_in,
            "tokensOut": self.tokens_out,
            "context": self.context_tokens,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TokenBucket":
        if not isinstance(data, dict):
            return cls()
        return cls(
            tokens_in=_count(data.get("tokensIn")),
            tokens_out=_count(data.get("tokensOut")),
            context_tokens=_count(data.get("context")),
        )


def _is_count(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _count(value: Any) -> int:
    """Persisted counter as a non-negative int; anything else reads as 0."""
    return max(0, int(value)) if _is_count(value) else 0


def _buckets_to_dict(buckets: Dict[str, TokenBucket]) -> Dict[str, Dict[str, int]]:
    return {key: bucket.to_dict() for key, bucket in buckets.items()}


def _buckets_from_dict(data: Any) -> Dict[str, TokenBucket]:
    if not isinstance(data, dict):
        return {}
    return {str(key): TokenBucket.from_dict(value) for key, value in data.items()}


def _counters_from_dict(data: Any) -> Dict[str, int]:
    if not isinstance(data, dict):
        return {}
    return {str(key): _count(value) for key, value in data.items() if _is_count(value)}


# Top-level keys owned by CollectionState; anything else is carried in extras.
STATE_KEYS = ("sessions", "tools", "agents", "channels", "context", "tokenUsage")


@dataclass
class CollectionState:
    """Root aggregate of everything the collector has observed.

    Mutated only by the aggregator. ``sessions`` keeps arrival order and
    bucket keys are never removed once created.
    """
    sessions: List[UsageRecord] = field(default_factory=list)
    agents: Dict[str, int] = field(default_factory=dict)
    channels: Dict[str, int] = field(default_factory=dict)
    tools: Dict[str, int] = field(default_factory=dict)
    context: List[Any] = field(default_factory=list)
    daily: Dict[str, TokenBucket] = field(default_factory=dict)
    hourly: Dict[str, TokenBucket] = field(default_factory=dict)
    total: TokenBucket = field(default_factory=TokenBucket)
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extras)
        data.update({
            "sessions": [record.to_dict() for record in self.sessions],
            "tools": dict(self.tools),
            "agents": dict(self.agents),
            "channels": dict(self.channels),
            "context": list(self.context),
            "tokenUsage": {
                "daily": _buckets_to_dict(self.daily),
                "hourly": _buckets_to_dict(self.hourly),
                "total": self.total.to_dict(),
            },
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionState":
        """Shallow-merge a persisted document over an empty state.

        Keys present in ``data`` win; missing keys keep their empty
        defaults. Malformed session entries are dropped and counters that
        are not finite numbers read as zero.
        """
        state = cls()
        if not isinstance(data, dict):
            return state

        sessions = data.get("sessions")
        for entry in sessions if isinstance(sessions, list) else []:
            try:
                state.sessions.append(UsageRecord.from_dict(entry))
            except (TypeError, ValueError, OverflowError):
                continue

        state.agents = _counters_from_dict(data.get("agents"))
        state.channels = _counters_from_dict(data.get("channels"))
        state.tools = _counters_from_dict(data.get("tools"))
        if isinstance(data.get("context"), list):
            state.context = list(data["context"])

        usage = data.get("tokenUsage")
        if isinstance(usage, dict):
            state.daily = _buckets_from_dict(usage.get("daily"))
            state.hourly = _buckets_from_dict(usage.get("hourly"))
            state.total = TokenBucket.from_dict(usage.get("total"))

        state.extras = {k: v for k, v in data.items() if k not in STATE_KEYS}
        return state


@dataclass(frozen=True)
class ArchiveRecord:
    """Frozen snapshot of one past day, written once by the archiver."""
    date: str
    token_usage: TokenBucket
    agents: Dict[str, int]
    channels: Dict[str, int]
    tools: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "tokenUsage": self.token_usage.to_dict(),
            "agents": dict(self.agents),
            "channels": dict(self.channels),
            "tools": dict(self.tools),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchiveRecord":
        if not isinstance(data, dict) or not data.get("date"):
            raise ValueError("Archive record must be an object with a 'date'")
        return cls(
            date=str(data["date"]),
            token_usage=TokenBucket.from_dict(data.get("tokenUsage")),
            agents=_counters_from_dict(data.get("agents")),
            channels=_counters_from_dict(data.get("channels")),
            tools=_counters_from_dict(data.get("tools")),
        )
