import calendar
from datetime import datetime, timedelta

from job_scheduler.domain.job import RecurrencePattern


def add_months(value: datetime, months: int) -> datetime:
    """
    Shift ``value`` by whole calendar months. A day-of-month that does not
    exist in the target month is clamped to that month's last day
    (Jan 31 + 1 month = Feb 28/29).
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def next_run_time(current_time: datetime, pattern: RecurrencePattern) -> datetime:
    """
    Next eligible time after ``current_time`` for the given pattern.
    """
    pattern = RecurrencePattern(pattern)
    if pattern == RecurrencePattern.HOURLY:
        return current_time + timedelta(hours=1)
    elif pattern == RecurrencePattern.DAILY:
        return current_time + timedelta(days=1)
    elif pattern == RecurrencePattern.WEEKLY:
        return current_time + timedelta(days=7)
    elif pattern == RecurrencePattern.MONTHLY:
        return add_months(current_time, 1)
    raise ValueError(f"Unsupported recurrence pattern: {pattern}")
