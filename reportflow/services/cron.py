"""
Cron expression evaluation backed by APScheduler's CronTrigger.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from ..errors import InvalidScheduleError

# Crontab weekday numbers; 0 and 7 are both Sunday
_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def crontab_weekdays(field: str) -> str:
    """
    Translate a crontab day-of-week field into APScheduler weekday names.

    APScheduler numbers weekdays from Monday, crontab from Sunday, so
    numeric values, ranges and steps are expanded into names. A stepped
    "*" counts from Sunday. Names and a bare "*" pass through unchanged.
    """
    translated = []
    for part in field.split(","):
        base, _, step = part.partition("/")
        if base == "*" and step:
            base = "0-6"
        start, _, end = base.partition("-")
        try:
            first = int(start)
            last = int(end) if end else (6 if step else first)
            stride = int(step) if step else 1
        except ValueError:
            translated.append(part)
            continue
        if not (0 <= first <= 7 and 0 <= last <= 7) or first > last or stride < 1:
            raise ValueError(f"invalid day of week: {part}")
        for number in range(first, last + 1, stride):
            name = _WEEKDAY_NAMES[number]
            if name not in translated:
                translated.append(name)
    return ",".join(translated)


class CronEvaluator:
    """Computes fire times for standard 5-field crontab expressions."""

    def trigger(self, expression: str, tz: str = "UTC") -> CronTrigger:
        if not expression or not expression.strip():
            raise InvalidScheduleError("Cron expression is required")
        fields = expression.split()
        if len(fields) != 5:
            raise InvalidScheduleError(
                f"Invalid cron expression '{expression}': expected 5 fields, got {len(fields)}"
            )
        minute, hour, day, month, day_of_week = fields
        try:
            return CronTrigger(
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=crontab_weekdays(day_of_week),
                timezone=tz,
            )
        except (ValueError, TypeError, LookupError) as e:
            raise InvalidScheduleError(f"Invalid cron expression '{expression}': {e}")

    def validate(self, expression: str, tz: str = "UTC") -> None:
        self.trigger(expression, tz)

    def next_run(self, expression: str, tz: str, from_time: datetime) -> Optional[datetime]:
        """First fire time strictly after from_time, in UTC."""
        trigger = self.trigger(expression, tz)
        if from_time.tzinfo is None:
            from_time = from_time.replace(tzinfo=timezone.utc)
        fire_time = trigger.get_next_fire_time(None, from_time + timedelta(microseconds=1))
        if fire_time is None:
            return None
        return fire_time.astimezone(timezone.utc)
