"""Datetime utility functions for consistent timezone handling."""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def get_current_utc_datetime() -> datetime:
    """
    Get current datetime in UTC timezone.

    Returns:
        datetime: Current UTC datetime with timezone info

    Example:
        >>> now = get_current_utc_datetime()
        >>> now.tzinfo
        datetime.timezone.utc
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the target month length.

    >>> add_months(date(2025, 1, 31), 1)
    datetime.date(2025, 2, 28)
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def anchored_month_period(anchor: date, on: date) -> tuple[date, date]:
    """Return the monthly period containing ``on`` for a membership started at ``anchor``.

    Periods start on the anchor's day of month (clamped for short months) and
    end the day before the next period starts.
    """
    months = (on.year - anchor.year) * 12 + (on.month - anchor.month)
    start = add_months(anchor, months)
    if start > on:
        months -= 1
        start = add_months(anchor, months)
    end = add_months(anchor, months + 1) - timedelta(days=1)
    return start, end


def iso_week_period(on: date) -> tuple[date, date]:
    """Return the Monday..Sunday week containing ``on``."""
    start = on - timedelta(days=on.weekday())
    return start, start + timedelta(days=6)


def unix_to_utc_date(timestamp: int) -> date:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date()


def local_date(value: datetime, tz_name: str = "UTC") -> date:
    """Calendar date of ``value`` in the gym's timezone."""
    return ensure_utc(value).astimezone(ZoneInfo(tz_name)).date()


def day_bounds_utc(start: date, end: date, tz_name: str = "UTC") -> tuple[datetime, datetime]:
    """UTC instants covering local days ``start``..``end`` inclusive."""
    tz = ZoneInfo(tz_name)
    lower = datetime.combine(start, time.min, tzinfo=tz).astimezone(timezone.utc)
    upper = datetime.combine(end + timedelta(days=1), time.min, tzinfo=tz).astimezone(timezone.utc)
    return lower, upper
