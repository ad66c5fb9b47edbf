"""
equipment-automation: A rule engine for equipment monitoring and control.

This library provides the automation core for equipment platforms:
- Triggers (manual, schedule, sensor threshold, equipment event)
- AND/OR condition gates over a runtime context
- Alert, control and log actions with delays and auto-revert
- Run bookkeeping and side-effect-free dry runs
"""

from equipment_automation.core.bus import Event, EventBus, EventFilter
from equipment_automation.automation import (
    Automation,
    AutomationEngine,
    EngineConfig,
    EquipmentPlatform,
    InMemoryAutomationStore,
)

__version__ = "0.1.0"

__all__ = [
    "Event",
    "EventBus",
    "EventFilter",
    "Automation",
    "AutomationEngine",
    "EngineConfig",
    "EquipmentPlatform",
    "InMemoryAutomationStore",
]
