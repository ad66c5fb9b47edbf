"""
Automation engine for equipment platforms.

Provides rule-based automation with triggers, conditions, and actions.

Features:
- Manual, schedule (once/daily/weekly/hourly/cron), threshold and event triggers
- Conditions combined with AND/OR over a runtime context
- Alert, control and log actions
- Delayed control actions and auto-revert (duration) on cancellable timers
- At most one run per automation at a time
- Run logs and run statistics
- Dry runs that describe what would happen without doing it

Architecture:
    AutomationEngine (run coordinator)
        ├── TriggerScheduler    schedules, thresholds, events
        ├── ConditionEvaluator  AND/OR gate over the runtime context
        └── ActionExecutor      alert / control / log
                └── TimerService   delays and auto-revert

    Collaborators: AutomationStore (persistence), EquipmentPlatform
    (control, alerts, log, clock), EventBus (readings and events).
"""

from .models import (
    # Enums
    TriggerType,
    ScheduleKind,
    Operator,
    ConditionLogic,
    ActionType,
    Severity,
    ControlCommand,
    RunStatus,
    # Triggers
    ManualTrigger,
    ScheduleTrigger,
    ThresholdTrigger,
    EventTrigger,
    TriggerConfig,
    # Conditions
    Condition,
    # Actions
    AlertAction,
    ControlAction,
    LogAction,
    ActionConfig,
    # Automation
    Automation,
    RunLog,
    # Simulation
    SimulationReport,
)
from .errors import (
    AutomationError,
    AutomationNotFoundError,
    EvaluationError,
    ExecutionError,
    ScheduleParseError,
    ValidationError,
)
from .adapter import EquipmentPlatform, MockEquipmentPlatform
from .config import EngineConfig
from .store import AutomationStore, InMemoryAutomationStore
from .evaluators import ConditionEvaluator
from .engine import AutomationEngine
from .presets import (
    temperature_alert,
    humidity_alert,
    low_temperature_alert,
    scheduled_on,
    scheduled_off,
    weekly_maintenance,
    pressure_alert,
    power_alert,
    manual_inspection,
    hourly_log,
    list_templates,
)

__all__ = [
    # Engine
    "AutomationEngine",
    "EngineConfig",
    # Collaborators
    "EquipmentPlatform",
    "MockEquipmentPlatform",
    "AutomationStore",
    "InMemoryAutomationStore",
    # Evaluators
    "ConditionEvaluator",
    # Errors
    "AutomationError",
    "AutomationNotFoundError",
    "EvaluationError",
    "ExecutionError",
    "ScheduleParseError",
    "ValidationError",
    # Enums
    "TriggerType",
    "ScheduleKind",
    "Operator",
    "ConditionLogic",
    "ActionType",
    "Severity",
    "ControlCommand",
    "RunStatus",
    # Triggers
    "ManualTrigger",
    "ScheduleTrigger",
    "ThresholdTrigger",
    "EventTrigger",
    "TriggerConfig",
    # Conditions
    "Condition",
    # Actions
    "AlertAction",
    "ControlAction",
    "LogAction",
    "ActionConfig",
    # Automation
    "Automation",
    "RunLog",
    "SimulationReport",
    # Presets
    "temperature_alert",
    "humidity_alert",
    "low_temperature_alert",
    "scheduled_on",
    "scheduled_off",
    "weekly_maintenance",
    "pressure_alert",
    "power_alert",
    "manual_inspection",
    "hourly_log",
    "list_templates",
]
