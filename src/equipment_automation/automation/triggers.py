"""
Trigger Scheduler - decides when an automation should be considered for firing.

Schedules are checked on the polling tick. Threshold and event triggers are
matched against bus events as they arrive. Manual triggers never fire here.

The scheduler only answers "fire now?"; running the automation is the
engine's job.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from equipment_automation.core.bus import Event

from .config import EngineConfig
from .errors import EvaluationError
from .evaluators import as_number, compare
from .models import (
    Automation,
    EventTrigger,
    ScheduleKind,
    ScheduleTrigger,
    ThresholdTrigger,
    TriggerEvaluation,
    as_utc,
)
from .schedules import CompiledSchedule, compile_schedule, floor_minute

if TYPE_CHECKING:
    from .adapter import EquipmentPlatform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FireSignal:
    """A trigger decided that an automation should run."""

    automation_id: int
    priority: int
    source: str  # "schedule", "threshold" or "event"
    fired_at: datetime
    equipment_id: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _Registration:
    automation: Automation
    schedule: Optional[CompiledSchedule] = None


def payload_matches(payload: Dict[str, Any], payload_match: Dict[str, Any]) -> bool:
    """
    Check an event payload against a match pattern.

    Each key matches either an exact value or a {"min": x, "max": y} range.
    """
    for key, expected in payload_match.items():
        actual = payload.get(key)

        if isinstance(expected, dict):
            number = as_number(actual)
            if number is None:
                return False
            if "min" in expected and number < float(expected["min"]):
                return False
            if "max" in expected and number > float(expected["max"]):
                return False
        elif actual != expected:
            return False

    return True


def _ran_since(automation: Automation, run_at: datetime) -> bool:
    last_run = as_utc(automation.last_run)
    return last_run is not None and last_run >= run_at


class TriggerScheduler:
    """
    Tracks registered automations and matches triggers against time and events.

    Engine-private trigger state lives here:
    - the last tick time (so each schedule slot fires once)
    - which once-schedules already fired for their run_at
    - threshold arming (edge mode) and last fire times (level mode)
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self._config = config or EngineConfig()
        self._registrations: Dict[int, _Registration] = {}
        self._lock = threading.Lock()

        self._last_tick: Optional[datetime] = None
        self._once_fired: Set[Tuple[int, datetime]] = set()
        self._threshold_active: Dict[Tuple[int, Optional[int]], bool] = {}
        self._threshold_last_fired: Dict[Tuple[int, Optional[int]], datetime] = {}

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, automation: Automation) -> None:
        """
        Register (or re-register) an automation.

        Schedules are compiled here so bad configs never reach the tick.

        Raises:
            ScheduleParseError: If the schedule cannot be compiled
        """
        schedule = None
        if isinstance(automation.trigger, ScheduleTrigger):
            schedule = compile_schedule(automation.trigger, self._config.timezone)

        with self._lock:
            self._registrations[automation.id] = _Registration(automation, schedule)
            self._reset_threshold_state(automation.id)

        logger.debug(
            f"Registered automation {automation.id} ({automation.trigger_type.value} trigger)"
        )

    def unregister(self, automation_id: int) -> None:
        """Forget an automation and its trigger state."""
        with self._lock:
            self._registrations.pop(automation_id, None)
            self._reset_threshold_state(automation_id)
            self._once_fired = {k for k in self._once_fired if k[0] != automation_id}

    def reset(self) -> None:
        """Drop all registrations and trigger state."""
        with self._lock:
            self._registrations.clear()
            self._last_tick = None
            self._once_fired.clear()
            self._threshold_active.clear()
            self._threshold_last_fired.clear()

    def _reset_threshold_state(self, automation_id: int) -> None:
        for state in (self._threshold_active, self._threshold_last_fired):
            for key in [k for k in state if k[0] == automation_id]:
                del state[key]

    @property
    def registered_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._registrations)

    def _enabled(self, trigger_cls: type) -> List[_Registration]:
        with self._lock:
            return [
                r
                for r in self._registrations.values()
                if r.automation.enabled and isinstance(r.automation.trigger, trigger_cls)
            ]

    # =========================================================================
    # Schedules
    # =========================================================================

    def due_schedules(self, now: datetime) -> List[FireSignal]:
        """
        Find schedule triggers due at this tick.

        Each tick covers the minutes since the previous tick (bounded by the
        grace window), so a slot fires once even if the clock jumps past it.

        Args:
            now: Current time (timezone-aware)

        Returns:
            Signals sorted by descending priority, then ascending id
        """
        current_minute = floor_minute(now)
        with self._lock:
            if self._last_tick is None:
                window_start = current_minute
            else:
                window_start = max(
                    floor_minute(self._last_tick) + timedelta(minutes=1),
                    current_minute - timedelta(minutes=self._config.schedule_grace_minutes),
                )
            self._last_tick = now

        signals: List[FireSignal] = []
        for registration in self._enabled(ScheduleTrigger):
            automation = registration.automation
            try:
                slot = self._due_slot(registration, window_start, now)
            except Exception as e:
                logger.error(
                    f"Schedule check failed for automation {automation.id}: {e}", exc_info=True
                )
                continue

            if slot is not None:
                logger.info(f"Schedule due for automation {automation.id} ({slot.isoformat()})")
                signals.append(
                    FireSignal(
                        automation_id=automation.id,
                        priority=automation.priority,
                        source="schedule",
                        fired_at=now,
                        payload={
                            "schedule_type": registration.schedule.kind.value,
                            "scheduled_for": slot.isoformat(),
                        },
                    )
                )

        signals.sort(key=lambda s: (-s.priority, s.automation_id))
        return signals

    def _due_slot(
        self, registration: _Registration, window_start: datetime, now: datetime
    ) -> Optional[datetime]:
        schedule = registration.schedule
        if schedule.kind != ScheduleKind.ONCE:
            return schedule.due_slot(window_start, now)

        automation = registration.automation
        key = (automation.id, schedule.run_at)
        with self._lock:
            if now < schedule.run_at or key in self._once_fired:
                return None
            if _ran_since(automation, schedule.run_at):
                self._once_fired.add(key)
                return None
            self._once_fired.add(key)
        return schedule.run_at

    def next_schedule_time(self, after: datetime) -> Optional[datetime]:
        """Earliest upcoming slot of any enabled schedule (for the loop's wait)."""
        upcoming = []
        start = floor_minute(after) + timedelta(minutes=1)
        for registration in self._enabled(ScheduleTrigger):
            slot = registration.schedule.next_fire_time(start)
            if slot is not None:
                upcoming.append(slot)
        return min(upcoming) if upcoming else None

    # =========================================================================
    # Threshold and Event Matching
    # =========================================================================

    def match_reading(self, event: Event) -> List[FireSignal]:
        """
        Match a sensor reading against threshold triggers.

        Edge mode fires once per crossing: the trigger re-arms only after a
        reading that does not satisfy it. Level mode fires on every qualifying
        reading, at most once per cooldown.
        """
        sensor_type = event.payload.get("sensor_type")
        value = event.payload.get("value")
        signals: List[FireSignal] = []

        for registration in self._enabled(ThresholdTrigger):
            automation = registration.automation
            trigger = automation.trigger
            if trigger.sensor_type != sensor_type:
                continue
            if trigger.equipment_id is not None and trigger.equipment_id != event.equipment_id:
                continue

            try:
                satisfied = compare(value, trigger.operator, trigger.threshold_value)
            except EvaluationError as e:
                logger.warning(f"Reading ignored for automation {automation.id}: {e}")
                satisfied = False

            if not self._should_fire(automation.id, event.equipment_id, satisfied, event.timestamp):
                continue

            logger.info(
                f"Threshold met for automation {automation.id}: "
                f"{sensor_type}={value} {trigger.operator.value} {trigger.threshold_value:g}"
            )
            signals.append(
                FireSignal(
                    automation_id=automation.id,
                    priority=automation.priority,
                    source="threshold",
                    fired_at=event.timestamp,
                    equipment_id=event.equipment_id,
                    payload={
                        "equipment_id": event.equipment_id,
                        "sensor_type": sensor_type,
                        "value": value,
                        "operator": trigger.operator.value,
                        "threshold_value": trigger.threshold_value,
                        "unit": trigger.unit,
                    },
                )
            )

        signals.sort(key=lambda s: (-s.priority, s.automation_id))
        return signals

    def _should_fire(
        self,
        automation_id: int,
        equipment_id: Optional[int],
        satisfied: bool,
        timestamp: datetime,
    ) -> bool:
        key = (automation_id, equipment_id)
        with self._lock:
            if self._config.threshold_mode == "edge":
                was_active = self._threshold_active.get(key, False)
                self._threshold_active[key] = satisfied
                return satisfied and not was_active

            if not satisfied:
                return False
            last = self._threshold_last_fired.get(key)
            cooldown = timedelta(seconds=self._config.threshold_cooldown_seconds)
            if last is not None and timestamp - last < cooldown:
                logger.debug(f"Automation {automation_id} in threshold cooldown")
                return False
            self._threshold_last_fired[key] = timestamp
            return True

    def match_event(self, event: Event) -> List[FireSignal]:
        """Match an equipment lifecycle event against event triggers."""
        signals: List[FireSignal] = []

        for registration in self._enabled(EventTrigger):
            automation = registration.automation
            trigger = automation.trigger
            if trigger.event_name != event.type:
                continue
            if trigger.equipment_id is not None and trigger.equipment_id != event.equipment_id:
                continue
            if not payload_matches(event.payload, trigger.payload_match):
                continue

            logger.info(f"Event {event.type} matched automation {automation.id}")
            signals.append(
                FireSignal(
                    automation_id=automation.id,
                    priority=automation.priority,
                    source="event",
                    fired_at=event.timestamp,
                    equipment_id=event.equipment_id,
                    payload={
                        "event_name": event.type,
                        "equipment_id": event.equipment_id,
                        **event.payload,
                    },
                )
            )

        signals.sort(key=lambda s: (-s.priority, s.automation_id))
        return signals

    # =========================================================================
    # Simulation
    # =========================================================================

    def evaluate(
        self,
        automation: Automation,
        now: datetime,
        platform: Optional["EquipmentPlatform"] = None,
    ) -> TriggerEvaluation:
        """
        Describe the trigger for a simulation report.

        Never changes trigger state and never raises for config problems;
        they are reported in the details instead.
        """
        trigger = automation.trigger
        trigger_type = automation.trigger_type.value

        if isinstance(trigger, ScheduleTrigger):
            with self._lock:
                registration = self._registrations.get(automation.id)
                once_fired = set(self._once_fired)
            try:
                schedule = (
                    registration.schedule
                    if registration is not None
                    and registration.automation.trigger == trigger
                    else compile_schedule(trigger, self._config.timezone)
                )
            except Exception as e:
                return TriggerEvaluation(trigger_type, False, {"error": str(e)})

            details = schedule.to_details(now)
            would_fire = True
            if schedule.kind == ScheduleKind.ONCE:
                fired = (automation.id, schedule.run_at) in once_fired or _ran_since(
                    automation, schedule.run_at
                )
                details["already_fired"] = fired
                would_fire = not fired
            return TriggerEvaluation(trigger_type, would_fire, details)

        if isinstance(trigger, ThresholdTrigger):
            details: Dict[str, Any] = {
                "equipment_id": trigger.equipment_id,
                "sensor_type": trigger.sensor_type,
                "condition": (
                    f"{trigger.operator.value} {trigger.threshold_value:g}{trigger.unit}"
                ),
                "current_value": None,
            }
            if trigger.equipment_id is None:
                details["equipment"] = "Any equipment"
                details["reason"] = "no single equipment to read"
                return TriggerEvaluation(trigger_type, False, details)

            current = None
            if platform is not None:
                equipment = platform.get_equipment(trigger.equipment_id)
                details["equipment"] = equipment.get("name") if equipment else "Unknown"
                current = platform.get_latest_reading(trigger.equipment_id, trigger.sensor_type)
            details["current_value"] = current
            if current is None:
                details["reason"] = "no reading available"
                return TriggerEvaluation(trigger_type, False, details)

            try:
                would_fire = compare(current, trigger.operator, trigger.threshold_value)
            except EvaluationError as e:
                details["reason"] = str(e)
                would_fire = False
            return TriggerEvaluation(trigger_type, would_fire, details)

        if isinstance(trigger, EventTrigger):
            return TriggerEvaluation(
                trigger_type,
                True,
                {
                    "event_name": trigger.event_name,
                    "equipment_id": trigger.equipment_id,
                    "payload_match": dict(trigger.payload_match),
                },
            )

        return TriggerEvaluation(
            trigger_type, True, {"message": "Manual trigger - fires when run explicitly"}
        )
