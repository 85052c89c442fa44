from __future__ import annotations
from datetime import datetime, timedelta, timezone as dt_tz


def utcnow() -> datetime:
    return datetime.now(dt_tz.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """
    Normalize a datetime to aware UTC.
    Naive values are taken to already be UTC (SQLite hands back naive datetimes
    for timezone-aware columns).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_tz.utc)
    return dt.astimezone(dt_tz.utc)


def window_contains(start: datetime | None, end: datetime | None, at: datetime) -> bool:
    """
    True when `at` falls inside [start, end]. Both bounds are inclusive and a
    missing bound is unbounded on that side.

    Examples:
        >>> from datetime import datetime, timezone
        >>> end = datetime(2025, 3, 1, 20, 0, tzinfo=timezone.utc)
        >>> window_contains(None, end, end)
        True
        >>> window_contains(None, end, end.replace(second=1))
        False
    """
    at = as_utc(at)
    start, end = as_utc(start), as_utc(end)
    if start is not None and at < start:
        return False
    if end is not None and at > end:
        return False
    return True


def is_past(deadline: datetime | None, now: datetime | None = None) -> bool:
    """A deadline of None never passes."""
    if deadline is None:
        return False
    return as_utc(deadline) < as_utc(now or utcnow())


def expiry_from(now: datetime, minutes: int) -> datetime:
    return as_utc(now) + timedelta(minutes=minutes)
