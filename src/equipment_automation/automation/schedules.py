"""
Schedule compilation for time-based triggers.

Recurring kinds (daily, weekly, hourly, custom) compile to an APScheduler
CronTrigger, so every kind shares one matching rule. ``once`` schedules
compare against run_at. Compilation happens when an automation is created
or updated; the polling tick only works with compiled schedules.

Day-of-week numbers follow crontab: 0 (or 7) is Sunday.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

from .errors import ScheduleParseError
from .models import ScheduleKind, ScheduleTrigger

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

DEFAULT_TIME = "08:00"
DEFAULT_DAY_OF_WEEK = 1  # Monday
DEFAULT_MINUTE = 0


def floor_minute(value: datetime) -> datetime:
    """Truncate a datetime to the start of its minute."""
    return value.replace(second=0, microsecond=0)


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """
    Parse an "HH:MM" time of day.

    Raises:
        ScheduleParseError: If the value is not a valid 24h time
    """
    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3):
        raise ScheduleParseError(f"Invalid time: {value!r} (expected HH:MM)", {"field": "time"})
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        raise ScheduleParseError(f"Invalid time: {value!r} (expected HH:MM)", {"field": "time"})
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ScheduleParseError(f"Time out of range: {value!r}", {"field": "time"})
    return hour, minute


def _weekday_number(token: str, expr: str) -> int:
    try:
        day = int(token)
    except ValueError:
        raise ScheduleParseError(f"Invalid day of week {token!r} in {expr!r}", {"field": "cron"})
    if not 0 <= day <= 7:
        raise ScheduleParseError(f"Day of week out of range in {expr!r}", {"field": "cron"})
    return day % 7


def _crontab_weekdays(field: str, expr: str) -> str:
    """
    Translate a crontab weekday field (0=Sunday) to weekday names.

    APScheduler numbers weekdays from Monday, so numeric items are expanded
    into explicit name lists. Items already using names pass through.
    """
    if field == "*":
        return field

    items: List[str] = []
    for item in field.split(","):
        base, _, step_text = item.partition("/")
        if any(c.isalpha() for c in base):
            items.append(item)
            continue

        if base == "*":
            days = list(range(7))
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            start = int(start_text) if start_text.isdigit() else -1
            end = int(end_text) if end_text.isdigit() else -1
            if not (0 <= start <= 7 and 0 <= end <= 7) or start > end:
                raise ScheduleParseError(f"Invalid weekday range {base!r} in {expr!r}", {"field": "cron"})
            days = list(range(start, end + 1))
        else:
            days = [_weekday_number(base, expr)]

        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ScheduleParseError(f"Invalid step {step_text!r} in {expr!r}", {"field": "cron"})
            days = days[:: int(step_text)]

        for day in days:
            name = WEEKDAY_NAMES[day % 7]
            if name not in items:
                items.append(name)

    return ",".join(items)


def parse_cron(expr: str, timezone: str) -> CronTrigger:
    """
    Compile a 5-field cron expression (minute hour day month weekday).

    Raises:
        ScheduleParseError: If the expression is malformed
    """
    parts = str(expr or "").split()
    if len(parts) != 5:
        raise ScheduleParseError(
            f"Cron expression must have 5 fields, got {len(parts)}: {expr!r}",
            {"field": "cron", "value": expr},
        )
    minute, hour, day, month, weekday = parts
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_crontab_weekdays(weekday, expr),
            timezone=timezone,
        )
    except ValueError as e:
        raise ScheduleParseError(f"Invalid cron expression {expr!r}: {e}", {"field": "cron"}) from e


@dataclass(frozen=True)
class CompiledSchedule:
    """A validated schedule ready for due-checks."""

    kind: ScheduleKind
    description: str
    cron: Optional[CronTrigger] = None
    run_at: Optional[datetime] = None  # Timezone-aware, for ONCE

    def next_fire_time(self, start: datetime) -> Optional[datetime]:
        """Earliest scheduled slot at or after ``start`` (None if never)."""
        if self.cron is not None:
            return self.cron.get_next_fire_time(None, start)
        if self.run_at is not None and self.run_at >= start:
            return self.run_at
        return None

    def due_slot(self, window_start: datetime, now: datetime) -> Optional[datetime]:
        """
        Return the recurring slot falling in [window_start, now], if any.

        ONCE schedules are not slot-based; see TriggerScheduler.
        """
        if self.cron is None:
            return None
        slot = self.cron.get_next_fire_time(None, window_start)
        if slot is not None and slot <= now:
            return slot
        return None

    def to_details(self, now: datetime) -> Dict[str, Any]:
        """Describe the schedule for simulation reports."""
        upcoming = self.next_fire_time(floor_minute(now))
        return {
            "schedule_type": self.kind.value,
            "schedule": self.description,
            "next_run": upcoming.isoformat() if upcoming else None,
        }


def compile_schedule(trigger: ScheduleTrigger, timezone: str = "UTC") -> CompiledSchedule:
    """
    Validate a schedule trigger and compile it.

    Args:
        trigger: The schedule trigger config
        timezone: IANA zone in which wall-clock fields are read

    Raises:
        ScheduleParseError: If any schedule field is invalid
    """
    kind = trigger.kind

    if kind == ScheduleKind.ONCE:
        if trigger.run_at is None:
            raise ScheduleParseError("Schedule 'once' requires run_at", {"field": "run_at"})
        run_at = trigger.run_at
        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=ZoneInfo(timezone))
        return CompiledSchedule(kind=kind, description=f"once at {run_at.isoformat()}", run_at=run_at)

    if kind == ScheduleKind.DAILY:
        hour, minute = parse_time_of_day(trigger.time or DEFAULT_TIME)
        return CompiledSchedule(
            kind=kind,
            description=f"daily at {hour:02d}:{minute:02d}",
            cron=CronTrigger(hour=hour, minute=minute, timezone=timezone),
        )

    if kind == ScheduleKind.WEEKLY:
        hour, minute = parse_time_of_day(trigger.time or DEFAULT_TIME)
        day = DEFAULT_DAY_OF_WEEK if trigger.day_of_week is None else trigger.day_of_week
        if not 0 <= day <= 6:
            raise ScheduleParseError(
                f"day_of_week must be 0-6 (0=Sunday), got {day}", {"field": "day_of_week"}
            )
        name = WEEKDAY_NAMES[day]
        return CompiledSchedule(
            kind=kind,
            description=f"weekly on {name} at {hour:02d}:{minute:02d}",
            cron=CronTrigger(day_of_week=name, hour=hour, minute=minute, timezone=timezone),
        )

    if kind == ScheduleKind.HOURLY:
        minute = DEFAULT_MINUTE if trigger.minute is None else trigger.minute
        if not 0 <= minute <= 59:
            raise ScheduleParseError(f"minute must be 0-59, got {minute}", {"field": "minute"})
        return CompiledSchedule(
            kind=kind,
            description=f"hourly at minute {minute}",
            cron=CronTrigger(minute=minute, timezone=timezone),
        )

    if not trigger.cron_expr:
        raise ScheduleParseError("Schedule 'custom' requires a cron expression", {"field": "cron"})
    return CompiledSchedule(
        kind=kind,
        description=f"cron '{trigger.cron_expr}'",
        cron=parse_cron(trigger.cron_expr, timezone),
    )
