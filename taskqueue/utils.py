"""
Time helpers shared across the engine.
"""

from datetime import UTC, datetime, timedelta

from taskqueue.errors import InvalidScheduleError


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def as_timedelta(delay: float | int | timedelta) -> timedelta:
    """Normalize a delay given in seconds or as a timedelta."""
    if isinstance(delay, timedelta):
        result = delay
    else:
        result = timedelta(seconds=float(delay))
    if result < timedelta(0):
        raise InvalidScheduleError(f"Delay must not be negative, got {delay!r}")
    return result
