"""UTC time helpers.

Timestamps are timezone-aware UTC datetimes. SQLModel stores them in UTC and
returns them aware on every backend, SQLite included.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def elapsed_ms(start: datetime | None, end: datetime) -> int | None:
    """Milliseconds between two aware datetimes, None if start is unknown."""
    if start is None:
        return None
    return max(0, int((end - start).total_seconds() * 1000))
