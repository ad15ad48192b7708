"""Pure time and money arithmetic shared by tracking and reporting."""

from __future__ import annotations

import calendar
from datetime import datetime

SECONDS_PER_HOUR = 3600.0


def duration_seconds(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds()


def calculate_earnings(hourly_rate: float, seconds: float) -> float:
    """Money earned at ``hourly_rate`` over ``seconds`` of tracked time."""
    return hourly_rate * (seconds / SECONDS_PER_HOUR)


def hourly_worth(earnings: float, seconds: float) -> float:
    """Earnings per hour over ``seconds``; 0 when no time is available."""
    if seconds <= 0:
        return 0.0
    return earnings / (seconds / SECONDS_PER_HOUR)


def effective_hourly_rate(fixed_cost: float, seconds: float) -> float:
    """Hourly rate actually realised on fixed-cost work."""
    return hourly_worth(fixed_cost, seconds)


def time_remaining_in_budget(budget: float, hourly_rate: float, seconds: float) -> float:
    """Seconds of work left at ``hourly_rate`` before ``budget`` is spent."""
    remaining = budget - calculate_earnings(hourly_rate, seconds)
    if remaining <= 0 or hourly_rate <= 0:
        return 0.0
    return remaining / hourly_rate * SECONDS_PER_HOUR


def budget_percentage_used(budget: float, hourly_rate: float, seconds: float) -> float:
    if budget <= 0:
        return 0.0
    return calculate_earnings(hourly_rate, seconds) / budget * 100.0


def format_duration(seconds: float) -> str:
    total_seconds = int(max(seconds, 0))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_duration_short(seconds: float) -> str:
    total_seconds = int(max(seconds, 0))
    hours, remainder = divmod(total_seconds, 3600)
    return f"{hours:02d}:{remainder // 60:02d}"


def format_interval(seconds: float) -> str:
    """Human label for a reminder interval, e.g. ``1 hour 30 min``."""
    hours, remainder = divmod(int(seconds), 3600)
    minutes = remainder // 60
    if hours > 0:
        label = f"{hours} hour{'' if hours == 1 else 's'}"
        if minutes > 0:
            label += f" {minutes} min"
        return label
    return f"{minutes} minute{'' if minutes == 1 else 's'}"


def months_before(value: datetime, months: int) -> datetime:
    """Same wall-clock time ``months`` calendar months earlier.

    The day of month is clamped to the length of the target month, so
    March 31 minus one month is the last day of February.
    """
    month_index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def to_naive_local(value: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)
