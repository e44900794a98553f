"""Datetime utilities for timezone-aware operations.

All persisted timestamps are timezone-aware UTC. ``committed_date`` values
are plain calendar dates.
"""

from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_date(value: date | datetime | str) -> date:
    """Coerce a date, datetime or ISO string to a UTC calendar date."""
    if isinstance(value, str):
        if "T" in value:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        else:
            value = date.fromisoformat(value)
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    return value


def next_timestamp(previous: datetime | None) -> datetime:
    """Return a timestamp strictly greater than ``previous``.

    Used for ``updated_at`` so staleness checks never see two writes
    to the same record with an equal timestamp.
    """
    now = utcnow()
    if previous is not None and now <= ensure_utc(previous):
        return ensure_utc(previous) + timedelta(microseconds=1)
    return now


__all__ = [
    "ensure_utc",
    "next_timestamp",
    "to_date",
    "utcnow",
]
