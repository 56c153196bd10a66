"""
Usage aggregation.

Folds usage records into daily, hourly and running-total buckets plus
per-agent and per-channel counters.
"""

from datetime import datetime
from typing import Optional, Tuple

from ..storage.models import CollectionState, TokenBucket, UsageRecord, ensure_utc


def daily_key(timestamp: datetime) -> str:
    """Bucket key for the UTC day of ``timestamp`` (``YYYY-MM-DD``)."""
    return ensure_utc(timestamp).strftime("%Y-%m-%d")


def hourly_key(timestamp: datetime) -> str:
    """Bucket key for the UTC hour of ``timestamp`` (``YYYY-MM-DDTHH``)."""
    return ensure_utc(timestamp).strftime("%Y-%m-%dT%H")


def fold(
    record: UsageRecord,
    state: CollectionState,
    max_sessions: Optional[int] = None
) -> None:
    """Fold one usage record into the collection state.

    Buckets are created zeroed on first touch and only ever incremented.
    When ``max_sessions`` is set, the oldest session records beyond that
    bound are dropped; buckets and counters are never pruned.

    Args:
        record: Record to fold (consumed once)
        state: State to mutate
        max_sessions: Optional cap on retained session records
    """
    state.sessions.append(record)
    if max_sessions is not None and len(state.sessions) > max_sessions:
        del state.sessions[:len(state.sessions) - max_sessions]

    state.daily.setdefault(daily_key(record.timestamp), TokenBucket()).add(record)
    state.hourly.setdefault(hourly_key(record.timestamp), TokenBucket()).add(record)
    state.total.add(record)

    agent = record.session.agent
    if agent:
        state.agents[agent] = state.agents.get(agent, 0) + 1

    channel = record.session.channel
    if channel:
        state.channels[channel] = state.channels.get(channel, 0) + 1


def hourly_summary(state: CollectionState, now: datetime) -> Tuple[str, TokenBucket]:
    """Return the hour key for ``now`` and a copy of its bucket (zeroed if absent)."""
    key = hourly_key(now)
    bucket = state.hourly.get(key)
    return key, bucket.copy() if bucket else TokenBucket()
