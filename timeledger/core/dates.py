from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone


def utc_now() -> datetime:
    # Use UTC timestamps for consistency across worker and script processes.
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; treat them as UTC so comparisons stay valid.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return as_utc(value).date()
    return value


def start_of_day(value: date | datetime) -> datetime:
    """Midnight UTC of the calendar day containing ``value``."""
    return datetime.combine(to_date(value), time.min, tzinfo=timezone.utc)


def week_start(value: date) -> date:
    """Monday of the ISO week containing ``value``."""
    return value - timedelta(days=value.weekday())


def parse_remote_datetime(value: str | None) -> datetime | None:
    # Redmine emits ISO-8601 with a trailing Z; normalize to aware UTC.
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)


def parse_remote_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None
