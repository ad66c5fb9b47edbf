"""
Core components shared by the automation engine and its host.

This package contains:
- bus: Event Bus for sensor readings and equipment events
"""

from equipment_automation.core.bus import (
    SENSOR_READING,
    Event,
    EventBus,
    EventFilter,
    reading_event,
)

__all__ = [
    "SENSOR_READING",
    "Event",
    "EventBus",
    "EventFilter",
    "reading_event",
]
