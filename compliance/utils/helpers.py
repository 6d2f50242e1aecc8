"""Shared date/time helpers.

utcnow:          single source of "now" for default clocks
as_utc:          normalise DB-loaded datetimes (SQLite drops tzinfo)
parse_datetime:  ISO-8601 request input → aware datetime (raises ValueError)
days_until:      whole days from one instant to another
"""
import math
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return *value* as an aware UTC datetime.

    SQLite stores DateTime(timezone=True) without an offset and hands back
    naive values; PostgreSQL returns aware ones.  Naive values are treated
    as UTC because every writer in this package stores UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO-8601 datetime string, raising ValueError on bad input.

    Accepts a trailing ``Z``.  Returns None for empty input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        raise ValueError(f"Expected a datetime, got a date: {value!r}")
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Invalid datetime: {value!r}") from exc


def days_until(target, now) -> int:
    """Whole days from *now* until *target*, rounded up; negative when past."""
    delta = as_utc(target) - as_utc(now)
    return math.ceil(delta.total_seconds() / 86400)


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None
