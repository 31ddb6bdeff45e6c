"""
Next-run calculation for schedule definitions.

All calendar arithmetic happens in the schedule's timezone; results are
returned in UTC.
"""

import calendar
from datetime import datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..errors import InvalidScheduleError
from ..models import Frequency, ScheduleDefinition
from .cron import CronEvaluator

_default_cron = CronEvaluator()


def parse_time_of_day(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse "HH:MM" (seconds, if present, are ignored)."""
    if value is None or value == "":
        return None
    parts = str(value).split(":")
    try:
        hours, minutes = int(parts[0]), int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        raise InvalidScheduleError(f"Invalid time of day: {value}")
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise InvalidScheduleError(f"Invalid time of day: {value}")
    return hours, minutes


def get_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidScheduleError(f"Unknown timezone: {name}")


def validate_schedule(schedule: ScheduleDefinition, cron: Optional[CronEvaluator] = None) -> None:
    """Raise InvalidScheduleError if the definition cannot produce run times."""
    errors = []
    get_zone(schedule.timezone)
    parse_time_of_day(schedule.time)

    if schedule.frequency == Frequency.ONCE and schedule.start_date is None:
        errors.append("A one-time schedule requires start_date")
    if schedule.interval is not None and (not isinstance(schedule.interval, int) or schedule.interval < 1):
        errors.append("interval must be a positive integer")
    if schedule.day_of_week is not None and schedule.day_of_week not in range(0, 7):
        errors.append("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
    if schedule.day_of_month is not None and schedule.day_of_month not in range(1, 32):
        errors.append("day_of_month must be between 1 and 31")
    if schedule.start_date and schedule.end_date and schedule.end_date <= schedule.start_date:
        errors.append("end_date must be after start_date")
    if errors:
        raise InvalidScheduleError(errors)

    if schedule.frequency == Frequency.CRON:
        (cron or _default_cron).validate(schedule.cron_expression or "", schedule.timezone)


def _at(local: datetime, hm: Optional[Tuple[int, int]]) -> datetime:
    if hm is None:
        return local
    return local.replace(hour=hm[0], minute=hm[1], second=0, microsecond=0)


def calculate_next_run(
    schedule: ScheduleDefinition,
    now: datetime,
    last_run: Optional[datetime] = None,
    cron: Optional[CronEvaluator] = None,
) -> Optional[datetime]:
    """
    Compute the next fire time after `now`.

    once: start_date until the schedule has run, then None.
    hourly: now + interval hours.
    daily: next calendar day at `time` (default 00:00).
    weekly: the next `day_of_week` (0 = Sunday, default Monday), never
        today; keeps the current time of day when `time` is unset.
    monthly: `day_of_month` (default 1, clamped) of next month; keeps the
        current time of day when `time` is unset.
    cron: next fire time of the expression.
    """
    if schedule.frequency == Frequency.ONCE:
        return schedule.start_date if last_run is None else None

    tz = get_zone(schedule.timezone)
    local_now = now.astimezone(tz)
    hm = parse_time_of_day(schedule.time)
    frequency = schedule.frequency

    if frequency == Frequency.HOURLY:
        next_run = now + timedelta(hours=schedule.interval or 1)
    elif frequency == Frequency.DAILY:
        day = local_now.date() + timedelta(days=1)
        hours, minutes = hm or (0, 0)
        next_run = datetime.combine(day, time(hours, minutes), tzinfo=tz)
    elif frequency == Frequency.WEEKLY:
        target = 1 if schedule.day_of_week is None else schedule.day_of_week
        today = (local_now.weekday() + 1) % 7
        delta = target - today
        if delta <= 0:
            delta += 7
        next_run = _at(local_now + timedelta(days=delta), hm)
    elif frequency == Frequency.MONTHLY:
        year, month = (local_now.year + 1, 1) if local_now.month == 12 else (local_now.year, local_now.month + 1)
        last_day = calendar.monthrange(year, month)[1]
        day = min(schedule.day_of_month or 1, last_day)
        next_run = _at(local_now.replace(year=year, month=month, day=day), hm)
    elif frequency == Frequency.CRON:
        next_run = (cron or _default_cron).next_run(
            schedule.cron_expression or "", schedule.timezone, now
        )
        if next_run is None:
            return None
    else:
        raise InvalidScheduleError(f"Unsupported frequency: {frequency}")

    next_run = next_run.astimezone(timezone.utc)

    if schedule.start_date and next_run < schedule.start_date:
        next_run = schedule.start_date
    if schedule.end_date and next_run > schedule.end_date:
        return None
    return next_run
