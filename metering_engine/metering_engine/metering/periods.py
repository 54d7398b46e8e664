"""Calendar math for aggregation windows, limit resets and billing intervals.

All boundaries are computed in UTC and are half-open: ``[start, end)``.
Aggregates are kept per calendar month, which is also the window of a
``monthly`` limit.
"""

from __future__ import annotations

import calendar
from datetime import UTC, datetime, timedelta

from metering_engine.models.plan import BillingInterval
from metering_engine.models.usage import ResetPeriod


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_bounds(at: datetime) -> tuple[datetime, datetime]:
    """Return the calendar month containing *at*."""
    at = ensure_utc(at)
    start = at.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, _add_months(start, 1)


def reset_window(period: ResetPeriod, at: datetime) -> tuple[datetime, datetime]:
    """Return the limit window of *period* that contains *at*.

    Weekly windows start on Monday.
    """
    at = ensure_utc(at)
    midnight = at.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is ResetPeriod.DAILY:
        return midnight, midnight + timedelta(days=1)
    if period is ResetPeriod.WEEKLY:
        start = midnight - timedelta(days=midnight.weekday())
        return start, start + timedelta(days=7)
    if period is ResetPeriod.MONTHLY:
        return month_bounds(at)
    start = midnight.replace(month=1, day=1)
    return start, start.replace(year=start.year + 1)


def add_interval(start: datetime, interval: BillingInterval, count: int = 1) -> datetime:
    """Advance *start* by *count* billing intervals, clamping the day of month."""
    months = 12 * count if interval is BillingInterval.YEAR else count
    return _add_months(ensure_utc(start), months)
