"""
Automation presets - ready-made automation templates.

Each preset builds an Automation that can be passed to
AutomationEngine.create_automation(). list_templates() describes them all
in dict form for pickers in the host UI.
"""

from typing import Any, Callable, Dict, List, Optional

from .models import (
    ActionConfig,
    AlertAction,
    Automation,
    ControlAction,
    ControlCommand,
    LogAction,
    ManualTrigger,
    Operator,
    ScheduleKind,
    ScheduleTrigger,
    Severity,
    ThresholdTrigger,
)


def _threshold_alert(
    name: str,
    description: str,
    sensor_type: str,
    operator: Operator,
    threshold_value: float,
    unit: str,
    severity: Severity,
    message: str,
    equipment_id: Optional[int],
    enabled: bool,
) -> Automation:
    return Automation(
        id=None,
        name=name,
        description=description,
        enabled=enabled,
        trigger=ThresholdTrigger(
            sensor_type=sensor_type,
            operator=operator,
            threshold_value=threshold_value,
            equipment_id=equipment_id,
            unit=unit,
        ),
        actions=[AlertAction(severity=severity, message=message)],
    )


def temperature_alert(
    *,
    threshold_value: float = 30,
    equipment_id: Optional[int] = None,
    enabled: bool = True,
) -> Automation:
    """
    Create an automation that alerts when temperature exceeds a threshold.

    Args:
        threshold_value: Temperature in °C (default 30)
        equipment_id: Only watch this equipment (None = any equipment)
        enabled: Whether the automation is active

    Returns:
        Configured Automation

    Example:
        engine.create_automation(temperature_alert(threshold_value=35, equipment_id=5))
    """
    return _threshold_alert(
        "Temperature Alert",
        "Send alert when temperature exceeds a threshold value",
        "temperature",
        Operator.GT,
        threshold_value,
        "°C",
        Severity.WARNING,
        "High temperature detected - exceeds threshold",
        equipment_id,
        enabled,
    )


def humidity_alert(
    *,
    threshold_value: float = 80,
    equipment_id: Optional[int] = None,
    enabled: bool = True,
) -> Automation:
    """Alert when humidity goes above the normal range (default 80%)."""
    return _threshold_alert(
        "Humidity Alert",
        "Send alert when humidity goes outside normal range",
        "humidity",
        Operator.GT,
        threshold_value,
        "%",
        Severity.WARNING,
        "High humidity detected - check ventilation",
        equipment_id,
        enabled,
    )


def low_temperature_alert(
    *,
    threshold_value: float = 5,
    equipment_id: Optional[int] = None,
    enabled: bool = True,
) -> Automation:
    """
    Create a critical alert for temperatures below a threshold.

    Uses a low default (5 °C) aimed at freeze protection.
    """
    return _threshold_alert(
        "Low Temperature Alert",
        "Send critical alert when temperature drops below threshold",
        "temperature",
        Operator.LT,
        threshold_value,
        "°C",
        Severity.CRITICAL,
        "Critical: Low temperature detected - risk of freezing",
        equipment_id,
        enabled,
    )


def pressure_alert(
    *,
    threshold_value: float = 100,
    equipment_id: Optional[int] = None,
    enabled: bool = True,
) -> Automation:
    """Critical alert when pressure exceeds the safe operating limit (PSI)."""
    return _threshold_alert(
        "Pressure Alert",
        "Alert when pressure exceeds safe operating limit",
        "pressure",
        Operator.GT,
        threshold_value,
        "PSI",
        Severity.CRITICAL,
        "Critical: High pressure detected - check equipment immediately",
        equipment_id,
        enabled,
    )


def power_alert(
    *,
    threshold_value: float = 5000,
    equipment_id: Optional[int] = None,
    enabled: bool = True,
) -> Automation:
    """Alert when power consumption exceeds a limit in watts."""
    return _threshold_alert(
        "Power Consumption Alert",
        "Alert when power consumption exceeds limit",
        "power",
        Operator.GT,
        threshold_value,
        "W",
        Severity.WARNING,
        "High power consumption detected",
        equipment_id,
        enabled,
    )


def scheduled_on(
    equipment_id: int,
    *,
    time: str = "08:00",
    channel: Optional[int] = None,
    duration_seconds: Optional[float] = None,
    enabled: bool = True,
) -> Automation:
    """
    Create an automation that turns equipment on every day.

    Args:
        equipment_id: Equipment to switch on
        time: Time of day "HH:MM" (default 08:00)
        channel: Channel to switch (None = all channels)
        duration_seconds: Switch back off after this long (None = stay on)
        enabled: Whether the automation is active

    Returns:
        Configured Automation

    Example:
        # Run the irrigation pump for 10 minutes every morning
        scheduled_on(7, time="06:30", channel=1, duration_seconds=600)
    """
    return Automation(
        id=None,
        name="Daily Equipment Start",
        description="Turn equipment on at a scheduled time each day",
        enabled=enabled,
        trigger=ScheduleTrigger(kind=ScheduleKind.DAILY, time=time),
        actions=[
            ControlAction(
                equipment_id=equipment_id,
                action=ControlCommand.ON,
                channel=channel,
                duration_seconds=duration_seconds,
            )
        ],
    )


def scheduled_off(
    equipment_id: int,
    *,
    time: str = "18:00",
    channel: Optional[int] = None,
    enabled: bool = True,
) -> Automation:
    """Turn equipment off every day (default 18:00)."""
    return Automation(
        id=None,
        name="Daily Equipment Shutdown",
        description="Turn equipment off at a scheduled time each day",
        enabled=enabled,
        trigger=ScheduleTrigger(kind=ScheduleKind.DAILY, time=time),
        actions=[
            ControlAction(equipment_id=equipment_id, action=ControlCommand.OFF, channel=channel)
        ],
    )


def weekly_maintenance(
    *,
    day_of_week: int = 1,
    time: str = "09:00",
    enabled: bool = True,
) -> Automation:
    """
    Send a maintenance reminder once a week.

    Args:
        day_of_week: 0=Sunday ... 6=Saturday (default Monday)
        time: Time of day "HH:MM"
        enabled: Whether the automation is active
    """
    return Automation(
        id=None,
        name="Weekly Maintenance Alert",
        description="Send maintenance reminder every week",
        enabled=enabled,
        trigger=ScheduleTrigger(kind=ScheduleKind.WEEKLY, day_of_week=day_of_week, time=time),
        actions=[AlertAction(severity=Severity.INFO, message="Weekly maintenance check reminder")],
    )


def manual_inspection(*, enabled: bool = True) -> Automation:
    """Manually triggered inspection: log a line and raise an info alert."""
    actions: List[ActionConfig] = [
        LogAction(message="Manual inspection initiated"),
        AlertAction(severity=Severity.INFO, message="Manual inspection in progress"),
    ]
    return Automation(
        id=None,
        name="Manual Inspection Trigger",
        description="Manually triggered inspection with logging",
        enabled=enabled,
        trigger=ManualTrigger(),
        actions=actions,
    )


def hourly_log(*, minute: int = 0, enabled: bool = True) -> Automation:
    """Log a status line every hour."""
    return Automation(
        id=None,
        name="Hourly Status Log",
        description="Log system status every hour",
        enabled=enabled,
        trigger=ScheduleTrigger(kind=ScheduleKind.HOURLY, minute=minute),
        actions=[LogAction(message="Hourly status check completed")],
    )


# Template ID -> (category, builder). Builders needing equipment get a placeholder.
TEMPLATES: Dict[str, tuple[str, Callable[[], Automation]]] = {
    "temperature_alert": ("Monitoring", temperature_alert),
    "humidity_alert": ("Monitoring", humidity_alert),
    "scheduled_on": ("Scheduling", lambda: scheduled_on(0)),
    "scheduled_off": ("Scheduling", lambda: scheduled_off(0)),
    "weekly_maintenance": ("Maintenance", weekly_maintenance),
    "low_temperature_alert": ("Monitoring", low_temperature_alert),
    "pressure_alert": ("Safety", pressure_alert),
    "manual_inspection": ("Manual", manual_inspection),
    "power_monitor": ("Monitoring", power_alert),
    "hourly_log": ("Logging", hourly_log),
}


def list_templates() -> List[Dict[str, Any]]:
    """
    Describe all templates.

    Returns:
        One dict per template with id, name, description, category, and the
        automation's trigger/conditions/actions in stored form
    """
    templates = []
    for template_id, (category, build) in TEMPLATES.items():
        data = build().to_dict()
        templates.append(
            {
                "id": template_id,
                "name": data["name"],
                "description": data["description"],
                "category": category,
                "trigger": data["trigger"],
                "conditions": data["conditions"],
                "actions": data["actions"],
            }
        )
    return templates
