"""Datetime helpers.

All timestamps in keygate are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC.

    Some backends (SQLite in particular) hand back naive datetimes even for
    timezone-aware columns, so every value read from storage goes through
    this helper.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def epoch_ms(seconds: float) -> int:
    """Convert a UNIX timestamp in seconds to whole milliseconds."""
    return round(seconds * 1000)
