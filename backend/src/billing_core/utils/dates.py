"""Date helpers for billing periods.

All timestamps in the database are naive UTC.
"""
import calendar
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int = 1) -> datetime:
    """
    Move a timestamp forward by calendar months.

    The day is clamped to the last day of the target month, so Jan 31 + 1
    month is Feb 28 (or 29).

    Args:
        value: Starting timestamp
        months: Number of months to add

    Returns:
        Shifted timestamp with the same time of day
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def days_in_month(value: datetime) -> int:
    """Number of days in the month containing value."""
    return calendar.monthrange(value.year, value.month)[1]


def days_remaining(end: datetime, now: datetime) -> int:
    """Whole days left until end, rounded up and never negative."""
    seconds = (end - now).total_seconds()
    if seconds <= 0:
        return 0
    return int(-(-seconds // 86400))


def billing_cycle_key(period_end: datetime) -> str:
    """Identifier of the billing cycle that starts at period_end."""
    return period_end.strftime("%Y-%m-%d")
