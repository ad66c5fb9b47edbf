"""
Data models for the Automation engine.

Defines automations, triggers, conditions, actions, run logs and the
simulation report. Stored automations arrive as loosely-typed records
(JSON strings, numeric strings, legacy key names); they are parsed once
here into strict types so the engine never re-interprets raw shapes.
"""

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ScheduleParseError, ValidationError


# =============================================================================
# Enums
# =============================================================================


class TriggerType(Enum):
    """Types of triggers that can start an automation run."""

    MANUAL = "manual"  # Only fired by explicit invocation
    SCHEDULE = "schedule"  # Wall-clock schedule, checked on the polling tick
    THRESHOLD = "threshold"  # Sensor reading crosses a threshold
    EVENT = "event"  # Equipment lifecycle event


class ScheduleKind(Enum):
    """Kinds of schedule triggers."""

    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    HOURLY = "hourly"
    CUSTOM = "custom"  # 5-field cron expression


class Operator(Enum):
    """Comparison operators shared by conditions and threshold triggers."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"


class ConditionLogic(Enum):
    """How a list of conditions is combined."""

    AND = "AND"
    OR = "OR"


class ActionType(Enum):
    """Types of actions that can be executed."""

    ALERT = "alert"
    CONTROL = "control"
    LOG = "log"


class Severity(Enum):
    """Alert severities."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ControlCommand(Enum):
    """Commands for equipment control actions."""

    ON = "on"
    OFF = "off"
    TOGGLE = "toggle"
    SET = "set"


class RunStatus(Enum):
    """Status of a run log entry."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"  # Conditions not met, run skipped


# =============================================================================
# Trigger Configs
# =============================================================================


@dataclass(frozen=True)
class ManualTrigger:
    """Fired only through the engine's manual trigger entry point."""

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.MANUAL


@dataclass(frozen=True)
class ScheduleTrigger:
    """Fire on a wall-clock schedule.

    Only the fields relevant to ``kind`` are read:
    - once: run_at
    - daily: time ("HH:MM")
    - weekly: day_of_week (0=Sunday) and time
    - hourly: minute
    - custom: cron_expr (minute hour day month weekday)
    """

    kind: ScheduleKind
    time: Optional[str] = None
    day_of_week: Optional[int] = None
    minute: Optional[int] = None
    cron_expr: Optional[str] = None
    run_at: Optional[datetime] = None

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.SCHEDULE


@dataclass(frozen=True)
class ThresholdTrigger:
    """Fire when a sensor reading satisfies ``operator threshold_value``."""

    sensor_type: str
    operator: Operator
    threshold_value: float
    equipment_id: Optional[int] = None  # None = readings from any equipment
    unit: str = ""

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.THRESHOLD


@dataclass(frozen=True)
class EventTrigger:
    """Fire on an equipment lifecycle event (e.g. equipment.offline)."""

    event_name: str
    equipment_id: Optional[int] = None
    payload_match: Dict[str, Any] = field(default_factory=dict)
    # e.g. {"status": "offline"} or {"temperature": {"min": 40}}

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.EVENT


TriggerConfig = ManualTrigger | ScheduleTrigger | ThresholdTrigger | EventTrigger


# =============================================================================
# Conditions
# =============================================================================


@dataclass(frozen=True)
class Condition:
    """Compare a context field against a value.

    Compared numerically when both sides parse as numbers, otherwise as strings.
    """

    field: str
    operator: Operator
    value: str


# =============================================================================
# Action Configs
# =============================================================================


@dataclass(frozen=True)
class AlertAction:
    """Create an alert through the alert sink."""

    severity: Severity = Severity.INFO
    message: str = "Automation triggered"

    @property
    def action_type(self) -> ActionType:
        return ActionType.ALERT


@dataclass(frozen=True)
class ControlAction:
    """Send a control command to a piece of equipment.

    ``delay_seconds`` defers the command on a cancellable timer.
    ``duration_seconds`` schedules the inverse command (auto-off) for
    ``on`` and ``toggle`` commands.

    Without a channel the command fans out over the equipment's read-write
    channels. ``stagger_delay_seconds`` spaces them out: channel i goes
    i * stagger after the run, and only the first channel waits for
    ``delay_seconds``.
    """

    equipment_id: int
    action: ControlCommand
    channel: Optional[int] = None  # None = all channels
    value: Optional[Any] = None  # Required for "set"
    delay_seconds: Optional[float] = None
    duration_seconds: Optional[float] = None
    stagger_delay_seconds: Optional[float] = None  # Between channels when fanning out

    @property
    def action_type(self) -> ActionType:
        return ActionType.CONTROL

    @property
    def reverts(self) -> bool:
        """True if this action schedules an automatic inverse command."""
        return bool(self.duration_seconds) and self.action in (
            ControlCommand.ON,
            ControlCommand.TOGGLE,
        )


@dataclass(frozen=True)
class LogAction:
    """Append a line to the automation log."""

    message: str = "Event logged"

    @property
    def action_type(self) -> ActionType:
        return ActionType.LOG


ActionConfig = AlertAction | ControlAction | LogAction


# =============================================================================
# Parsing helpers
# =============================================================================


def _load_structure(value: Any, default: Any, what: str) -> Any:
    """Decode a string-encoded JSON structure, passing parsed values through."""
    if value is None or value == "":
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON in {what}: {e}", {"field": what}) from e
    return value


def _parse_enum(enum_cls: type, raw: Any, what: str) -> Any:
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(str(m.value) for m in enum_cls)
        raise ValidationError(
            f"Unknown {what}: {raw!r} (expected one of {allowed})",
            {"field": what, "value": raw},
        )


def _optional_int(raw: Any, what: str, error: type = ValidationError) -> Optional[int]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise error(f"Invalid {what}: {raw!r}", {"field": what, "value": raw})
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise error(f"Invalid {what}: {raw!r}", {"field": what, "value": raw})


def _optional_seconds(raw: Any, what: str) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {what}: {raw!r}", {"field": what, "value": raw})
    if seconds < 0:
        raise ValidationError(f"{what} must not be negative", {"field": what, "value": raw})
    return seconds or None


def _parse_datetime(raw: Any, field_name: str = "run_at") -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        raise ScheduleParseError(
            f"Invalid {field_name}: {raw!r}", {"field": field_name, "value": raw}
        )


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Read a naive timestamp as UTC. Stores may persist run times without an offset."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Automation
# =============================================================================


@dataclass
class Automation:
    """A complete automation.

    Consists of:
    - trigger: what starts a run
    - conditions: combined with condition_logic; an empty list always passes
    - actions: executed in order when conditions pass
    - run statistics written back by the engine after each live run
    """

    id: Optional[int]
    name: str
    trigger: TriggerConfig
    conditions: List[Condition] = field(default_factory=list)
    actions: List[ActionConfig] = field(default_factory=list)
    condition_logic: ConditionLogic = ConditionLogic.AND
    enabled: bool = True
    priority: int = 0
    description: str = ""
    run_count: int = 0
    last_run: Optional[datetime] = None
    last_status: Optional[RunStatus] = None

    @property
    def trigger_type(self) -> TriggerType:
        return self.trigger.trigger_type

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for storage/transport."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "priority": self.priority,
            "trigger": self._serialize_trigger(),
            "conditions": [
                {"field": c.field, "operator": c.operator.value, "value": c.value}
                for c in self.conditions
            ],
            "condition_logic": self.condition_logic.value,
            "actions": [self._serialize_action(a) for a in self.actions],
            "run_count": self.run_count,
            "last_run": _format_datetime(self.last_run),
            "last_status": self.last_status.value if self.last_status else None,
        }

    def _serialize_trigger(self) -> Dict[str, Any]:
        """Serialize trigger config."""
        t = self.trigger
        if isinstance(t, ScheduleTrigger):
            result: Dict[str, Any] = {"type": "schedule", "schedule_type": t.kind.value}
            if t.time is not None:
                result["time"] = t.time
            if t.day_of_week is not None:
                result["day_of_week"] = t.day_of_week
            if t.minute is not None:
                result["minute"] = t.minute
            if t.cron_expr is not None:
                result["cron"] = t.cron_expr
            if t.run_at is not None:
                result["run_at"] = t.run_at.isoformat()
            return result
        elif isinstance(t, ThresholdTrigger):
            return {
                "type": "threshold",
                "equipment_id": t.equipment_id,
                "sensor_type": t.sensor_type,
                "operator": t.operator.value,
                "threshold_value": t.threshold_value,
                "unit": t.unit,
            }
        elif isinstance(t, EventTrigger):
            return {
                "type": "event",
                "event_name": t.event_name,
                "equipment_id": t.equipment_id,
                "payload_match": dict(t.payload_match),
            }
        return {"type": "manual"}

    def _serialize_action(self, a: ActionConfig) -> Dict[str, Any]:
        """Serialize action config."""
        if isinstance(a, AlertAction):
            return {"type": "alert", "severity": a.severity.value, "message": a.message}
        elif isinstance(a, ControlAction):
            result: Dict[str, Any] = {
                "type": "control",
                "equipment_id": a.equipment_id,
                "action": a.action.value,
            }
            if a.channel is not None:
                result["channel"] = a.channel
            if a.value is not None:
                result["value"] = a.value
            if a.delay_seconds:
                result["delay_seconds"] = a.delay_seconds
            if a.duration_seconds:
                result["duration_seconds"] = a.duration_seconds
            if a.stagger_delay_seconds:
                result["stagger_delay_seconds"] = a.stagger_delay_seconds
            return result
        return {"type": "log", "message": a.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Automation":
        """Deserialize from a stored record or API payload.

        Accepts the legacy ``trigger_config`` key and JSON-encoded strings for
        the trigger, conditions and actions.

        Raises:
            ValidationError: If any part of the config is malformed
            ScheduleParseError: If schedule fields cannot be coerced
        """
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Name is required", {"field": "name"})

        trigger_data = _load_structure(
            data.get("trigger", data.get("trigger_config")), {}, "trigger"
        )
        conditions_data = _load_structure(data.get("conditions"), [], "conditions")
        actions_data = _load_structure(data.get("actions"), [], "actions")

        if not isinstance(trigger_data, dict):
            raise ValidationError("Trigger must be an object", {"field": "trigger"})
        if not isinstance(conditions_data, list):
            raise ValidationError("Conditions must be a list", {"field": "conditions"})
        if not isinstance(actions_data, list):
            raise ValidationError("Actions must be a list", {"field": "actions"})

        last_status = data.get("last_status")
        priority = _optional_int(data.get("priority"), "priority")

        return cls(
            id=_optional_int(data.get("id"), "id"),
            name=name,
            description=data.get("description") or "",
            enabled=bool(data.get("enabled", True)),
            priority=priority or 0,
            trigger=cls._parse_trigger(trigger_data),
            conditions=[cls._parse_condition(c) for c in conditions_data],
            condition_logic=_parse_enum(
                ConditionLogic,
                str(data.get("condition_logic") or "AND").upper(),
                "condition_logic",
            ),
            actions=[cls._parse_action(a) for a in actions_data],
            run_count=_optional_int(data.get("run_count"), "run_count") or 0,
            last_run=as_utc(_parse_datetime(data.get("last_run"), "last_run")),
            last_status=_parse_enum(RunStatus, last_status, "last_status")
            if last_status
            else None,
        )

    @staticmethod
    def _parse_trigger(data: Dict[str, Any]) -> TriggerConfig:
        """Parse trigger config from dict."""
        trigger_type = _parse_enum(TriggerType, data.get("type", "manual"), "trigger type")

        if trigger_type == TriggerType.MANUAL:
            return ManualTrigger()
        elif trigger_type == TriggerType.SCHEDULE:
            kind = data.get("schedule_type", data.get("kind"))
            if kind is None:
                raise ScheduleParseError("Schedule type is required", {"field": "schedule_type"})
            try:
                kind = ScheduleKind(kind)
            except ValueError:
                raise ScheduleParseError(
                    f"Unknown schedule type: {kind!r}", {"field": "schedule_type"}
                )
            return ScheduleTrigger(
                kind=kind,
                time=data.get("time") or None,
                day_of_week=_optional_int(data.get("day_of_week"), "day_of_week", ScheduleParseError),
                minute=_optional_int(data.get("minute"), "minute", ScheduleParseError),
                cron_expr=data.get("cron", data.get("cron_expr")) or None,
                run_at=_parse_datetime(data.get("run_at")),
            )
        elif trigger_type == TriggerType.THRESHOLD:
            raw_threshold = data.get("threshold_value")
            try:
                threshold = float(raw_threshold)
            except (TypeError, ValueError):
                raise ValidationError(
                    f"Invalid threshold_value: {raw_threshold!r}",
                    {"field": "threshold_value"},
                )
            sensor_type = data.get("sensor_type")
            if not sensor_type:
                raise ValidationError("sensor_type is required", {"field": "sensor_type"})
            return ThresholdTrigger(
                sensor_type=str(sensor_type),
                operator=_parse_enum(Operator, data.get("operator", "gt"), "operator"),
                threshold_value=threshold,
                equipment_id=_optional_int(data.get("equipment_id"), "equipment_id"),
                unit=data.get("unit") or "",
            )
        else:
            event_name = data.get("event_name", data.get("event"))
            if not event_name:
                raise ValidationError("event_name is required", {"field": "event_name"})
            payload_match = data.get("payload_match", data.get("filter")) or {}
            if not isinstance(payload_match, dict):
                raise ValidationError("payload_match must be an object", {"field": "payload_match"})
            return EventTrigger(
                event_name=str(event_name),
                equipment_id=_optional_int(data.get("equipment_id"), "equipment_id"),
                payload_match=payload_match,
            )

    @staticmethod
    def _parse_condition(data: Dict[str, Any]) -> Condition:
        """Parse condition from dict."""
        if not isinstance(data, dict):
            raise ValidationError("Condition must be an object", {"field": "conditions"})
        field_name = data.get("field")
        if not field_name:
            raise ValidationError("Condition field is required", {"field": "conditions"})
        value = data.get("value")
        return Condition(
            field=str(field_name),
            operator=_parse_enum(Operator, data.get("operator", "eq"), "operator"),
            value="" if value is None else str(value),
        )

    @staticmethod
    def _parse_action(data: Dict[str, Any]) -> ActionConfig:
        """Parse action config from dict."""
        if not isinstance(data, dict):
            raise ValidationError("Action must be an object", {"field": "actions"})
        action_type = _parse_enum(ActionType, data.get("type"), "action type")

        if action_type == ActionType.ALERT:
            return AlertAction(
                severity=_parse_enum(Severity, data.get("severity") or "info", "severity"),
                message=data.get("message") or "Automation triggered",
            )
        elif action_type == ActionType.CONTROL:
            equipment_id = _optional_int(data.get("equipment_id"), "equipment_id")
            if equipment_id is None:
                raise ValidationError(
                    "Control action requires equipment_id", {"field": "equipment_id"}
                )
            command = _parse_enum(ControlCommand, data.get("action"), "control action")
            value = data.get("value")
            if command == ControlCommand.SET and value is None:
                raise ValidationError("Control action 'set' requires a value", {"field": "value"})
            return ControlAction(
                equipment_id=equipment_id,
                action=command,
                channel=_optional_int(data.get("channel"), "channel"),
                value=value,
                delay_seconds=_optional_seconds(data.get("delay_seconds"), "delay_seconds"),
                duration_seconds=_optional_seconds(
                    data.get("duration_seconds"), "duration_seconds"
                ),
                stagger_delay_seconds=_optional_seconds(
                    data.get("stagger_delay_seconds"), "stagger_delay_seconds"
                ),
            )
        return LogAction(message=data.get("message") or "Event logged")


# =============================================================================
# Run Records
# =============================================================================


@dataclass(frozen=True)
class RunLog:
    """One run of an automation. Immutable once completed."""

    id: Optional[int]
    automation_id: int
    triggered_at: datetime
    status: RunStatus = RunStatus.PENDING
    message: str = ""
    completed_at: Optional[datetime] = None
    source: str = "manual"

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def complete(self, status: RunStatus, message: str, completed_at: datetime) -> "RunLog":
        """Return the finalized copy of a pending run log."""
        if self.is_complete:
            raise ValueError(f"Run log {self.id} is already complete")
        return replace(self, status=status, message=message, completed_at=completed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "automation_id": self.automation_id,
            "triggered_at": self.triggered_at.isoformat(),
            "completed_at": _format_datetime(self.completed_at),
            "status": self.status.value,
            "message": self.message,
            "source": self.source,
        }


# =============================================================================
# Simulation Report
# =============================================================================


@dataclass
class TriggerEvaluation:
    type: str
    would_fire: bool
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConditionResult:
    index: int
    field: str
    operator: str
    expected_value: str
    would_pass: bool
    test_result: str
    actual_value: Any = None


@dataclass
class ActionPreview:
    index: int
    type: str
    would_execute: bool
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimulationSummary:
    trigger_would_fire: bool
    conditions_evaluated: int
    conditions_logic: str
    all_conditions_met: bool
    total_actions: int
    actions_to_execute: int


@dataclass
class SimulationReport:
    """Result of a dry run. Nothing in here was executed."""

    automation_id: Optional[int]
    automation_name: str
    status: str  # "success" or "conditions_not_met"
    trigger: TriggerEvaluation
    conditions: List[ConditionResult]
    actions: List[ActionPreview]
    summary: SimulationSummary
    message: str
    simulated: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
