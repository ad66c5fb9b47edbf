#!/usr/bin/env python3
"""
Demo of the AutomationEngine with common equipment automations.

This example demonstrates:
1. Setting up the engine with the mock equipment platform
2. Using presets for common patterns (alerts, daily on/off)
3. Threshold triggers driven by sensor readings on the event bus
4. Dry runs that report what would happen without doing it
5. Auto-off timers and run history

Run with: python -m examples.automation_demo
"""

from datetime import datetime, UTC

from equipment_automation.core.bus import Event, EventBus, reading_event
from equipment_automation.automation import (
    AutomationEngine,
    EngineConfig,
    InMemoryAutomationStore,
    MockEquipmentPlatform,
    # Presets
    temperature_alert,
    scheduled_on,
    list_templates,
)


def main():
    print("=" * 60)
    print("AutomationEngine Demo")
    print("=" * 60)

    bus = EventBus()

    # Create mock platform (integration provides the real one)
    platform = MockEquipmentPlatform()
    start = datetime(2025, 1, 15, 6, 29, 0, tzinfo=UTC)
    platform.set_current_time(start)
    platform.add_equipment(5, "Boiler Room Sensor")
    platform.add_equipment(7, "Irrigation Pump")
    platform.set_reading(5, "temperature", 24.0)

    # Inline runs keep the demo output in order
    engine = AutomationEngine(
        InMemoryAutomationStore(), platform, EngineConfig(max_workers=0), bus=bus
    )

    print("\n1. USING PRESETS (Common Patterns)")
    print("-" * 40)

    boiler_alert = engine.create_automation(temperature_alert(threshold_value=30, equipment_id=5))
    print(f"✓ Added: {boiler_alert.name} (id {boiler_alert.id})")

    pump_morning = engine.create_automation(
        scheduled_on(7, time="06:30", channel=1, duration_seconds=600)
    )
    print(f"✓ Added: {pump_morning.name} (id {pump_morning.id})")

    print(f"\n   {len(list_templates())} templates available:")
    for template in list_templates():
        print(f"   - [{template['category']}] {template['name']}")

    print("\n2. SENSOR READINGS")
    print("-" * 40)

    for value in (26.0, 31.5, 32.0):
        print(f"\n→ Boiler temperature {value}°C")
        platform.set_reading(5, "temperature", value)
        bus.publish(reading_event(5, "temperature", value, timestamp=platform.get_current_time()))

    for severity, message, equipment_id in platform.alerts:
        print(f"   Alert [{severity}] equipment {equipment_id}: {message}")
    print("   (one alert: a crossing fires once until the value drops back)")

    print("\n3. DRY RUN")
    print("-" * 40)

    report = engine.test(pump_morning.id)
    print(f"   {report.message}")
    print(f"   Trigger: {report.trigger.details.get('schedule')}, next {report.trigger.details.get('next_run')}")
    for preview in report.actions:
        print(f"   Action {preview.index}: {preview.details.get('simulation_note')}")

    print("\n4. SCHEDULE AND AUTO-OFF")
    print("-" * 40)

    engine.on_tick(start)
    now = platform.advance(60)
    print(f"\n→ Tick at {now:%H:%M}")
    print(f"   Started: {engine.on_tick(now)}")
    for timer in engine.get_active_timers():
        print(f"   Pending timer {timer['key']} at {timer['fire_at']} {timer['description']}")

    now = platform.advance(600)
    print(f"\n→ Timers at {now:%H:%M}")
    engine.run_due_timers(now)
    for equipment_id, action, channel, _ in platform.control_calls:
        print(f"   Control: equipment {equipment_id} channel {channel} -> {action}")

    print("\n5. EQUIPMENT EVENTS")
    print("-" * 40)

    engine.create_automation(
        {
            "name": "Pump offline",
            "trigger": {"type": "event", "event_name": "equipment.offline", "equipment_id": 7},
            "actions": [{"type": "log", "message": "Irrigation pump went offline"}],
        }
    )
    bus.publish(Event(type="equipment.offline", source="modbus", equipment_id=7))
    for message, automation_id in platform.log_lines:
        print(f"   Log (automation {automation_id}): {message}")

    print("\n6. RUN HISTORY")
    print("-" * 40)

    for automation in engine.list_automations():
        print(f"   {automation.name}: {automation.run_count} run(s)")
        for log in engine.get_run_logs(automation.id, limit=5):
            print(f"     {log.triggered_at:%H:%M} [{log.status.value}] {log.message}")

    engine.stop()

    print("\n" + "=" * 60)
    print("Demo complete!")
    print("=" * 60)


if __name__ == "__main__":
    main()
