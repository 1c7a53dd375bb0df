# src/ourdm_sync/db/time.py
"""Time utilities for the local store.

Records carry integer epoch milliseconds so ordering and window checks never
depend on how the database driver round-trips timezone information.
"""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], int]


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def now_ms() -> int:
    """Return the current UTC time in epoch milliseconds."""
    return int(utcnow().timestamp() * 1000)


def to_datetime(value_ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value_ms / 1000, tz=UTC)


def from_datetime(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds, treating naive values as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)
