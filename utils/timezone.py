"""UTC-everywhere time handling for ledger timestamps and due dates."""

from datetime import date, datetime, timedelta, timezone


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def days_ago(days: int) -> datetime:
    """Start of a trailing window of `days` days ending now."""
    return now_utc() - timedelta(days=days)


def days_from_now(days: int) -> datetime:
    """Point `days` days in the future, used for default due dates."""
    return now_utc() + timedelta(days=days)


def is_past(moment: datetime | date | None) -> bool:
    """
    Whether a due date has passed.

    None is never past. A plain date is compared against today's UTC date,
    so an invoice due today is not yet overdue.
    """
    if moment is None:
        return False
    if isinstance(moment, datetime):
        return now_utc() > to_utc(moment)
    return now_utc().date() > moment
