"""Datetime helpers.

All timestamps are stored as naive UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def latest(*values: datetime | None) -> datetime | None:
    """Return the most recent of the given timestamps, ignoring ``None``."""
    present = [v for v in values if v is not None]
    if not present:
        return None
    return max(present)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an incoming datetime to naive UTC (naive input is taken as UTC)."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
