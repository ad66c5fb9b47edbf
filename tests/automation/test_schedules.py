"""Tests for schedule compilation."""

from datetime import datetime, timedelta, UTC

import pytest

from equipment_automation.automation.errors import ScheduleParseError
from equipment_automation.automation.models import ScheduleKind, ScheduleTrigger
from equipment_automation.automation.schedules import (
    _crontab_weekdays,
    compile_schedule,
    floor_minute,
    parse_cron,
    parse_time_of_day,
)

# 2025-01-15 is a Wednesday
WEDNESDAY = datetime(2025, 1, 15, 7, 0, tzinfo=UTC)


class TestParsing:
    """Tests for time and cron parsing helpers."""

    def test_time_of_day(self):
        assert parse_time_of_day("08:00") == (8, 0)
        assert parse_time_of_day("23:59") == (23, 59)
        assert parse_time_of_day("6:05") == (6, 5)

    @pytest.mark.parametrize("value", ["25:00", "08:60", "8", "eight:00", ""])
    def test_invalid_time_of_day(self, value):
        with pytest.raises(ScheduleParseError):
            parse_time_of_day(value)

    def test_weekday_translation(self):
        """Crontab counts from Sunday; names avoid off-by-one weekdays."""
        assert _crontab_weekdays("*", "") == "*"
        assert _crontab_weekdays("1-5", "") == "mon,tue,wed,thu,fri"
        assert _crontab_weekdays("0,7", "") == "sun"
        assert _crontab_weekdays("*/2", "") == "sun,tue,thu,sat"
        assert _crontab_weekdays("sat", "") == "sat"

    def test_cron_requires_five_fields(self):
        with pytest.raises(ScheduleParseError):
            parse_cron("0 8 * *", "UTC")
        with pytest.raises(ScheduleParseError):
            parse_cron("0 0 8 * * *", "UTC")

    def test_cron_field_out_of_range(self):
        with pytest.raises(ScheduleParseError):
            parse_cron("61 * * * *", "UTC")
        with pytest.raises(ScheduleParseError):
            parse_cron("0 8 * * 9", "UTC")

    def test_floor_minute(self):
        assert floor_minute(datetime(2025, 1, 15, 8, 0, 42, 500, tzinfo=UTC)) == datetime(
            2025, 1, 15, 8, 0, tzinfo=UTC
        )


class TestCompileSchedule:
    """Tests for compile_schedule() and next fire times."""

    def test_daily(self):
        schedule = compile_schedule(ScheduleTrigger(kind=ScheduleKind.DAILY, time="08:00"))
        assert schedule.description == "daily at 08:00"
        assert schedule.next_fire_time(WEDNESDAY) == datetime(2025, 1, 15, 8, 0, tzinfo=UTC)
        assert schedule.next_fire_time(WEDNESDAY.replace(hour=9)) == datetime(
            2025, 1, 16, 8, 0, tzinfo=UTC
        )

    def test_daily_default_time(self):
        schedule = compile_schedule(ScheduleTrigger(kind=ScheduleKind.DAILY))
        assert schedule.description == "daily at 08:00"

    def test_daily_in_local_timezone(self):
        """Wall-clock fields are read in the configured zone."""
        schedule = compile_schedule(
            ScheduleTrigger(kind=ScheduleKind.DAILY, time="08:00"), "Europe/Berlin"
        )
        start = datetime(2025, 1, 15, 0, 0, tzinfo=UTC)
        # 08:00 CET is 07:00 UTC in January
        assert schedule.next_fire_time(start) == datetime(2025, 1, 15, 7, 0, tzinfo=UTC)

    def test_weekly_sunday_is_zero(self):
        schedule = compile_schedule(
            ScheduleTrigger(kind=ScheduleKind.WEEKLY, day_of_week=0, time="09:00")
        )
        assert schedule.next_fire_time(WEDNESDAY) == datetime(2025, 1, 19, 9, 0, tzinfo=UTC)

    def test_weekly_day_out_of_range(self):
        with pytest.raises(ScheduleParseError):
            compile_schedule(ScheduleTrigger(kind=ScheduleKind.WEEKLY, day_of_week=7))

    def test_hourly(self):
        schedule = compile_schedule(ScheduleTrigger(kind=ScheduleKind.HOURLY, minute=15))
        start = datetime(2025, 1, 15, 10, 20, tzinfo=UTC)
        assert schedule.next_fire_time(start) == datetime(2025, 1, 15, 11, 15, tzinfo=UTC)

    def test_hourly_minute_out_of_range(self):
        with pytest.raises(ScheduleParseError):
            compile_schedule(ScheduleTrigger(kind=ScheduleKind.HOURLY, minute=60))

    def test_custom_weekdays(self):
        schedule = compile_schedule(
            ScheduleTrigger(kind=ScheduleKind.CUSTOM, cron_expr="30 6 * * 1-5")
        )
        saturday = datetime(2025, 1, 18, 0, 0, tzinfo=UTC)
        assert schedule.next_fire_time(saturday) == datetime(2025, 1, 20, 6, 30, tzinfo=UTC)

    def test_custom_sunday(self):
        schedule = compile_schedule(ScheduleTrigger(kind=ScheduleKind.CUSTOM, cron_expr="0 12 * * 0"))
        assert schedule.next_fire_time(WEDNESDAY) == datetime(2025, 1, 19, 12, 0, tzinfo=UTC)

    def test_custom_requires_expression(self):
        with pytest.raises(ScheduleParseError):
            compile_schedule(ScheduleTrigger(kind=ScheduleKind.CUSTOM))

    def test_once_requires_run_at(self):
        with pytest.raises(ScheduleParseError):
            compile_schedule(ScheduleTrigger(kind=ScheduleKind.ONCE))

    def test_once_naive_run_at_uses_zone(self):
        schedule = compile_schedule(
            ScheduleTrigger(kind=ScheduleKind.ONCE, run_at=datetime(2025, 1, 15, 12, 0)),
            "Europe/Berlin",
        )
        assert schedule.run_at == datetime(2025, 1, 15, 11, 0, tzinfo=UTC)
        assert schedule.next_fire_time(WEDNESDAY) == schedule.run_at
        assert schedule.next_fire_time(WEDNESDAY + timedelta(days=1)) is None


class TestDueSlot:
    """Tests for CompiledSchedule.due_slot()."""

    def test_slot_inside_window(self):
        schedule = compile_schedule(ScheduleTrigger(kind=ScheduleKind.DAILY, time="08:00"))
        slot = schedule.due_slot(
            datetime(2025, 1, 15, 7, 59, tzinfo=UTC), datetime(2025, 1, 15, 8, 1, tzinfo=UTC)
        )
        assert slot == datetime(2025, 1, 15, 8, 0, tzinfo=UTC)

    def test_slot_outside_window(self):
        schedule = compile_schedule(ScheduleTrigger(kind=ScheduleKind.DAILY, time="08:00"))
        assert (
            schedule.due_slot(
                datetime(2025, 1, 15, 8, 1, tzinfo=UTC), datetime(2025, 1, 15, 8, 30, tzinfo=UTC)
            )
            is None
        )

    def test_details(self):
        schedule = compile_schedule(ScheduleTrigger(kind=ScheduleKind.HOURLY, minute=0))
        details = schedule.to_details(datetime(2025, 1, 15, 10, 20, 30, tzinfo=UTC))
        assert details["schedule_type"] == "hourly"
        assert details["schedule"] == "hourly at minute 0"
        assert datetime.fromisoformat(details["next_run"]) == datetime(
            2025, 1, 15, 11, 0, tzinfo=UTC
        )
