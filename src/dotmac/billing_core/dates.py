"""
Date and billing-interval arithmetic.

All instants are timezone-aware UTC datetimes. Month and year steps clamp to
the last day of the target month so that Jan 31 + 1 month is Feb 28 (or 29).
"""

import calendar
from datetime import UTC, datetime, timedelta

from dotmac.billing_core.catalog.models import BillingInterval


def ensure_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to UTC. Naive datetimes are rejected."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"naive datetime not allowed: {value.isoformat()}")
    return value.astimezone(UTC)


def add_days(value: datetime, days: int) -> datetime:
    return value + timedelta(days=days)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_interval(value: datetime, interval: BillingInterval | str, count: int = 1) -> datetime:
    """Advance ``value`` by ``count`` billing intervals."""
    interval = BillingInterval(interval)
    if interval == BillingInterval.DAY:
        return add_days(value, count)
    if interval == BillingInterval.WEEK:
        return add_days(value, 7 * count)
    if interval == BillingInterval.MONTH:
        return add_months(value, count)
    return add_months(value, 12 * count)


def ceil_days(start: datetime, end: datetime) -> int:
    """Whole days from ``start`` to ``end``, rounded up. Zero or negative when end <= start."""
    delta = end - start
    # timedelta division keeps microsecond precision without float drift
    whole, remainder = divmod(delta, timedelta(days=1))
    return whole + (1 if remainder else 0)


def min_datetime(*values: datetime | None) -> datetime | None:
    present = [value for value in values if value is not None]
    return min(present) if present else None


__all__ = [
    "ensure_utc",
    "add_days",
    "add_months",
    "add_interval",
    "ceil_days",
    "min_datetime",
]
