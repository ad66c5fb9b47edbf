"""Tests for automation presets."""

from datetime import datetime, UTC

from equipment_automation.automation import (
    Automation,
    AutomationEngine,
    EngineConfig,
    InMemoryAutomationStore,
    MockEquipmentPlatform,
    ScheduleKind,
    ThresholdTrigger,
    hourly_log,
    list_templates,
    low_temperature_alert,
    manual_inspection,
    power_alert,
    pressure_alert,
    scheduled_on,
    temperature_alert,
    weekly_maintenance,
)
from equipment_automation.automation.presets import TEMPLATES


def test_temperature_alert_defaults():
    automation = temperature_alert(equipment_id=5)

    assert automation.name == "Temperature Alert"
    assert isinstance(automation.trigger, ThresholdTrigger)
    assert automation.trigger.threshold_value == 30
    assert automation.trigger.equipment_id == 5
    assert automation.trigger.unit == "°C"


def test_low_temperature_is_critical():
    automation = low_temperature_alert(threshold_value=2)
    assert automation.trigger.operator.value == "lt"
    assert automation.actions[0].severity.value == "critical"


def test_scheduled_on_with_auto_off():
    automation = scheduled_on(7, time="06:30", channel=1, duration_seconds=600)

    assert automation.trigger.kind == ScheduleKind.DAILY
    assert automation.trigger.time == "06:30"
    [action] = automation.actions
    assert (action.equipment_id, action.channel, action.duration_seconds) == (7, 1, 600)


def test_weekly_maintenance_day():
    assert weekly_maintenance(day_of_week=0).trigger.day_of_week == 0


def test_list_templates():
    templates = list_templates()

    assert [t["id"] for t in templates] == list(TEMPLATES)
    for template in templates:
        assert {"id", "name", "description", "category", "trigger", "conditions", "actions"} <= set(
            template
        )
        # Every template round-trips through the automation parser
        Automation.from_dict(template)


def test_presets_are_accepted_by_engine():
    platform = MockEquipmentPlatform()
    platform.set_current_time(datetime(2025, 1, 15, 8, 0, tzinfo=UTC))
    engine = AutomationEngine(InMemoryAutomationStore(), platform, EngineConfig(max_workers=0))

    for _, build in TEMPLATES.values():
        engine.create_automation(build())

    assert len(engine.list_automations()) == len(TEMPLATES)


def test_every_template_builder_is_exported():
    import equipment_automation.automation as package

    for builder in (pressure_alert, power_alert, manual_inspection, hourly_log):
        assert builder.__name__ in package.__all__

    assert pressure_alert(equipment_id=3).trigger.sensor_type == "pressure"
    assert power_alert().trigger.unit == "W"
    assert manual_inspection().trigger_type.value == "manual"
    assert hourly_log(minute=15).trigger.kind == ScheduleKind.HOURLY
