"""
Automation engine - the run coordinator.

Ties trigger -> condition -> action together per automation:

    Idle -> Evaluating -> (Skipped | Executing) -> Idle

At most one run per automation is active at any time; a fire arriving while
a run is active is dropped. Distinct automations never wait on each other.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from equipment_automation.core.bus import SENSOR_READING, Event, EventBus, EventFilter

from .actions import ActionExecutor, ExecutionResult
from .adapter import EquipmentPlatform
from .config import EngineConfig
from .errors import AutomationNotFoundError, ValidationError
from .evaluators import ConditionEvaluator, describe_failure
from .models import (
    Automation,
    RunLog,
    RunStatus,
    ScheduleKind,
    ScheduleTrigger,
    SimulationReport,
    SimulationSummary,
    ThresholdTrigger,
)
from .schedules import compile_schedule
from .store import AutomationStore
from .timers import TimerService
from .triggers import FireSignal, TriggerScheduler

logger = logging.getLogger(__name__)

EXECUTED_EVENT = "automation.executed"
TICK_JOB_ID = "automation-tick"


class RunPhase(Enum):
    """Where an automation is in its run cycle."""

    IDLE = "idle"
    EVALUATING = "evaluating"
    EXECUTING = "executing"


@dataclass
class RunState:
    """
    Engine-private run state for one automation.

    epoch increases whenever the automation is cancelled (disabled, updated,
    deleted). Actions and timers carry the epoch they were started under and
    do nothing once it is stale.
    """

    automation_id: int
    phase: RunPhase = RunPhase.IDLE
    epoch: int = 0
    started_at: Optional[datetime] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class AutomationEngine:
    """
    Coordinates automation runs.

    Responsibilities:
    - CRUD that keeps the store, the trigger scheduler and timers in sync
    - Manual trigger and dry-run (test) entry points
    - Reacting to schedule ticks, sensor readings and equipment events
    - Run bookkeeping (run logs, run_count, last_run, last_status)

    Without start(), nothing runs in the background: the host (or a test)
    calls on_tick() and run_due_timers() itself.
    """

    def __init__(
        self,
        store: AutomationStore,
        platform: EquipmentPlatform,
        config: Optional[EngineConfig] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._store = store
        self._platform = platform
        self._config = config or EngineConfig()
        self._bus: Optional[EventBus] = None
        self._last_bus: Optional[EventBus] = None

        self._timers = TimerService()
        self._scheduler = TriggerScheduler(self._config)
        self._evaluator = ConditionEvaluator()
        self._executor = ActionExecutor(platform, self._timers)

        self._states: Dict[int, RunState] = {}
        self._states_lock = threading.Lock()

        self._background: Optional[BackgroundScheduler] = None

        if bus is not None:
            self.attach(bus)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def is_started(self) -> bool:
        return self._background is not None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def attach(self, bus: EventBus) -> None:
        """Subscribe to sensor readings and equipment events on a bus."""
        if self._bus is bus:
            return
        if self._bus is not None:
            self.detach()
        self._bus = bus
        self._last_bus = bus
        bus.subscribe(self._on_sensor_reading, EventFilter(event_type=SENSOR_READING))
        bus.subscribe(self._on_equipment_event)
        logger.debug("Automation engine attached to event bus")

    def detach(self) -> None:
        """Unsubscribe from the bus."""
        if self._bus is None:
            return
        self._bus.unsubscribe(self._on_sensor_reading)
        self._bus.unsubscribe(self._on_equipment_event)
        self._bus = None

    def load(self) -> int:
        """
        Register every stored automation with the trigger scheduler.

        Automations whose schedule no longer compiles are skipped and logged.

        Returns:
            Number of automations registered
        """
        self._scheduler.reset()
        count = 0
        for automation in self._store.list_automations():
            try:
                self._scheduler.register(automation)
                count += 1
            except ValidationError as e:
                logger.error(f"Skipping automation {automation.id} ({automation.name}): {e}")
        logger.info(f"Loaded {count} automation(s)")
        return count

    def start(self) -> None:
        """
        Load automations and start the background scheduler.

        The schedule tick runs as an interval job on its own single-thread
        executor. Runs fired by the bus or a tick, and delayed/auto-revert
        timers, run as jobs on the worker pool, so a hanging equipment call
        never holds up the tick.
        """
        if self._background is not None:
            return

        self.load()
        if self._bus is None and self._last_bus is not None:
            self.attach(self._last_bus)

        background = BackgroundScheduler(
            executors={
                "default": ThreadPoolExecutor(max(self._config.max_workers, 1)),
                "tick": ThreadPoolExecutor(1),
            },
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone=self._config.timezone,
        )
        background.add_job(
            self.on_tick,
            "interval",
            seconds=self._config.tick_interval_seconds,
            id=TICK_JOB_ID,
            executor="tick",
            next_run_time=datetime.now(self._config.tz),
            max_instances=1,
            coalesce=True,
        )
        background.start()
        self._timers.attach(background)
        self._background = background
        logger.info(
            f"Automation engine started (tick {self._config.tick_interval_seconds:g}s, "
            f"{self._config.max_workers} worker(s), timezone {self._config.timezone})"
        )

    def stop(self) -> None:
        """
        Stop the scheduler, unsubscribe, and drop all pending timers.

        In-flight runs finish before this returns.
        """
        self.detach()
        self._timers.shutdown()

        background, self._background = self._background, None
        if background is not None and background.running:
            background.shutdown(wait=True)

        logger.info("Automation engine stopped")

    # =========================================================================
    # CRUD
    # =========================================================================

    def list_automations(self) -> List[Automation]:
        return self._store.list_automations()

    def get_automation(self, automation_id: int) -> Automation:
        """
        Raises:
            AutomationNotFoundError: If the automation doesn't exist
        """
        automation = self._store.get(automation_id)
        if automation is None:
            raise AutomationNotFoundError(automation_id)
        return automation

    def create_automation(self, data: Dict[str, Any] | Automation) -> Automation:
        """
        Validate and store a new automation.

        Args:
            data: Automation or its dict form (stored records are accepted too)

        Raises:
            ValidationError: If the config is malformed
            ScheduleParseError: If the schedule doesn't compile
        """
        automation = data if isinstance(data, Automation) else Automation.from_dict(data)
        self._validate_schedule(automation)

        created = self._store.create(replace(automation, id=None))
        self._scheduler.register(created)
        return created

    def update_automation(self, automation_id: int, data: Dict[str, Any] | Automation) -> Automation:
        """
        Replace an automation's configuration.

        Pending timers of the automation are cancelled; run statistics are kept.

        Raises:
            AutomationNotFoundError: If the automation doesn't exist
            ValidationError: If the config is malformed (nothing is changed)
        """
        self.get_automation(automation_id)
        automation = data if isinstance(data, Automation) else Automation.from_dict(data)
        automation = replace(automation, id=automation_id)
        self._validate_schedule(automation)

        updated = self._store.update(automation)
        self._cancel(automation_id, "updated")
        self._scheduler.register(updated)
        return updated

    def delete_automation(self, automation_id: int) -> bool:
        """
        Delete an automation, cancelling its timers.

        Raises:
            AutomationNotFoundError: If the automation doesn't exist
        """
        self.get_automation(automation_id)
        self._cancel(automation_id, "deleted")
        self._scheduler.unregister(automation_id)
        return self._store.delete(automation_id)

    def set_enabled(self, automation_id: int, enabled: bool) -> Automation:
        """
        Enable or disable an automation.

        Disabling cancels pending timers and suppresses the rest of an
        in-flight run.
        """
        self.get_automation(automation_id)
        self._store.set_enabled(automation_id, enabled)
        if not enabled:
            self._cancel(automation_id, "disabled")
        automation = self.get_automation(automation_id)
        self._scheduler.register(automation)
        return automation

    def toggle(self, automation_id: int) -> Automation:
        """Flip an automation's enabled flag."""
        automation = self.get_automation(automation_id)
        return self.set_enabled(automation_id, not automation.enabled)

    def duplicate(self, automation_id: int) -> Automation:
        """
        Copy an automation as "<name> (Copy)".

        The copy starts disabled with fresh run statistics.
        """
        source = self.get_automation(automation_id)
        names = {a.name for a in self._store.list_automations()}

        name = f"{source.name} (Copy)"
        counter = 2
        while name in names:
            name = f"{source.name} (Copy {counter})"
            counter += 1

        copy = replace(
            source,
            id=None,
            name=name,
            enabled=False,
            run_count=0,
            last_run=None,
            last_status=None,
        )
        created = self._store.create(copy)
        self._scheduler.register(created)
        return created

    def _validate_schedule(self, automation: Automation) -> None:
        if isinstance(automation.trigger, ScheduleTrigger):
            compile_schedule(automation.trigger, self._config.timezone)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_run_logs(self, automation_id: int, limit: int = 20) -> List[RunLog]:
        """Run history of an automation, newest first."""
        return self._store.get_run_logs(automation_id, limit)

    def get_active_timers(self, automation_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Pending delay/auto-revert timers (for debugging)."""
        return self._timers.pending(automation_id)

    def is_running(self, automation_id: int) -> bool:
        state = self._state(automation_id)
        with state.lock:
            return state.phase != RunPhase.IDLE

    # =========================================================================
    # Entry Points
    # =========================================================================

    def trigger(self, automation_id: int) -> Optional[RunLog]:
        """
        Fire an automation manually and run it on the calling thread.

        Returns:
            The completed run log, or None if the automation is disabled or
            already running (no run log is created in either case)

        Raises:
            AutomationNotFoundError: If the automation doesn't exist
        """
        automation = self.get_automation(automation_id)
        if not automation.enabled:
            logger.info(f"Automation {automation_id} is disabled, ignoring manual trigger")
            return None

        epoch = self._claim(automation_id)
        if epoch is None:
            logger.debug(f"Automation {automation_id} already running, dropping manual trigger")
            return None

        return self._run_claimed(automation, epoch, "manual", {}, None)

    def test(self, automation_id: int) -> SimulationReport:
        """
        Dry-run an automation.

        Evaluates the trigger and conditions exactly as a live run would and
        describes the actions without performing them. Writes nothing: no run
        log, no run statistics, no timers.

        Raises:
            AutomationNotFoundError: If the automation doesn't exist
        """
        automation = self.get_automation(automation_id)
        now = self._platform.get_current_time()

        trigger_evaluation = self._scheduler.evaluate(automation, now, self._platform)

        payload: Dict[str, Any] = {}
        trigger = automation.trigger
        if (
            isinstance(trigger, ThresholdTrigger)
            and trigger_evaluation.details.get("current_value") is not None
        ):
            payload = {
                "equipment_id": trigger.equipment_id,
                "sensor_type": trigger.sensor_type,
                "value": trigger_evaluation.details["current_value"],
            }

        context = self._build_context(now, payload)
        passed, results = self._evaluator.explain(
            automation.conditions, context, automation.condition_logic
        )
        previews = self._executor.simulate(automation, passed)

        summary = SimulationSummary(
            trigger_would_fire=trigger_evaluation.would_fire,
            conditions_evaluated=len(results),
            conditions_logic=automation.condition_logic.value,
            all_conditions_met=passed,
            total_actions=len(previews),
            actions_to_execute=sum(1 for p in previews if p.would_execute),
        )

        if passed:
            message = (
                f"Test completed successfully. "
                f"{summary.actions_to_execute} action(s) would be executed."
            )
        else:
            message = (
                f"Test completed. {describe_failure(results, automation.condition_logic)} - "
                f"{len(previews)} action(s) would NOT execute."
            )

        logger.debug(f"Simulated automation {automation_id}: {message}")
        return SimulationReport(
            automation_id=automation.id,
            automation_name=automation.name,
            status="success" if passed else "conditions_not_met",
            trigger=trigger_evaluation,
            conditions=results,
            actions=previews,
            summary=summary,
            message=message,
        )

    def on_tick(self, now: Optional[datetime] = None) -> List[int]:
        """
        Check schedule triggers and start the due automations.

        Due automations are dispatched in descending priority, ties by id.

        Args:
            now: Current time (defaults to the platform clock)

        Returns:
            IDs of the automations that were started
        """
        if now is None:
            now = self._platform.get_current_time()

        started = []
        for signal in self._scheduler.due_schedules(now):
            if self._dispatch_signal(signal):
                started.append(signal.automation_id)
        return started

    def run_due_timers(self, now: Optional[datetime] = None) -> int:
        """Run delayed actions and auto-reverts whose time has come."""
        if now is None:
            now = self._platform.get_current_time()
        return self._timers.run_due(now)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def _on_sensor_reading(self, event: Event) -> None:
        for signal in self._scheduler.match_reading(event):
            self._dispatch_signal(signal)

    def _on_equipment_event(self, event: Event) -> None:
        # Readings have their own handler; the engine's own notifications are not inputs
        if event.type == SENSOR_READING or event.source == "automation":
            return
        for signal in self._scheduler.match_event(event):
            self._dispatch_signal(signal)

    # =========================================================================
    # Run State
    # =========================================================================

    def _state(self, automation_id: int) -> RunState:
        with self._states_lock:
            state = self._states.get(automation_id)
            if state is None:
                state = RunState(automation_id)
                self._states[automation_id] = state
            return state

    def _claim(self, automation_id: int) -> Optional[int]:
        """Move Idle -> Evaluating. Returns the run epoch, or None if busy."""
        state = self._state(automation_id)
        with state.lock:
            if state.phase != RunPhase.IDLE:
                return None
            state.phase = RunPhase.EVALUATING
            state.started_at = self._platform.get_current_time()
            return state.epoch

    def _begin_execution(self, automation_id: int, epoch: int) -> bool:
        """Move Evaluating -> Executing unless the run was cancelled meanwhile."""
        state = self._state(automation_id)
        with state.lock:
            if state.epoch != epoch:
                return False
            state.phase = RunPhase.EXECUTING
            return True

    def _release(self, automation_id: int) -> None:
        state = self._state(automation_id)
        with state.lock:
            state.phase = RunPhase.IDLE
            state.started_at = None

    def _is_current(self, automation_id: int, epoch: int) -> bool:
        state = self._state(automation_id)
        with state.lock:
            return state.epoch == epoch

    def _cancel(self, automation_id: int, reason: str) -> None:
        state = self._state(automation_id)
        with state.lock:
            state.epoch += 1
            running = state.phase != RunPhase.IDLE
        cancelled = self._timers.cancel_automation(automation_id)
        if running or cancelled:
            logger.info(
                f"Automation {automation_id} {reason}: cancelled {cancelled} timer(s)"
                + (", suppressing rest of in-flight run" if running else "")
            )

    # =========================================================================
    # Running
    # =========================================================================

    def _dispatch_signal(self, signal: FireSignal) -> bool:
        """Claim the automation and run it (on the worker pool once started)."""
        try:
            automation = self._store.get(signal.automation_id)
            if automation is None or not automation.enabled:
                return False

            epoch = self._claim(automation.id)
            if epoch is None:
                logger.debug(
                    f"Automation {automation.id} already running, "
                    f"dropping {signal.source} trigger"
                )
                return False

            args = [automation, epoch, signal.source, signal.payload, signal.equipment_id]
            background = self._background
            if background is None or self._config.max_workers == 0:
                self._run_claimed(*args)
                return True

            if not background.running:
                self._release(automation.id)
                logger.warning(f"Scheduler stopped, dropping run of automation {automation.id}")
                return False

            try:
                background.add_job(
                    self._run_claimed,
                    args=args,
                    name=f"run:{automation.id}:{signal.source}",
                    misfire_grace_time=None,
                )
            except Exception:
                self._release(automation.id)
                raise
            return True

        except Exception as e:
            logger.error(
                f"Failed to dispatch automation {signal.automation_id}: {e}", exc_info=True
            )
            return False

    def _run_claimed(
        self,
        automation: Automation,
        epoch: int,
        source: str,
        payload: Dict[str, Any],
        equipment_id: Optional[int],
    ) -> Optional[RunLog]:
        """Run an automation whose run slot is already claimed."""
        try:
            return self._run(automation, epoch, source, payload, equipment_id)
        finally:
            if source == "schedule" and self._is_once(automation):
                self._disable_after_once(automation)
            self._release(automation.id)

    def _run(
        self,
        automation: Automation,
        epoch: int,
        source: str,
        payload: Dict[str, Any],
        equipment_id: Optional[int],
    ) -> Optional[RunLog]:
        now = self._platform.get_current_time()
        logger.info(f"Automation {automation.id} ({automation.name}) fired by {source} trigger")

        try:
            log = self._store.add_run_log(
                RunLog(id=None, automation_id=automation.id, triggered_at=now, source=source)
            )
        except ValueError as e:
            logger.warning(f"Automation {automation.id} vanished before its run started: {e}")
            return None

        try:
            context = self._build_context(now, payload)
            passed, results = self._evaluator.explain(
                automation.conditions, context, automation.condition_logic
            )
            if not passed:
                message = describe_failure(results, automation.condition_logic)
                logger.info(f"Automation {automation.id} skipped: {message}")
                return self._finish(log, RunStatus.WARNING, message)

            if not self._begin_execution(automation.id, epoch):
                logger.info(f"Automation {automation.id} cancelled before execution")
                return self._finish(log, RunStatus.WARNING, "Cancelled before execution")

            result = self._executor.execute(
                automation, epoch, self._is_current, now, equipment_id
            )
            message = result.summary(source)

            try:
                self._store.record_run(automation.id, now, result.status)
            except ValueError:
                logger.warning(f"Automation {automation.id} was deleted during its run")

            completed = self._finish(log, result.status, message)
            self._publish_executed(automation, source, result)
            logger.info(
                f"Automation {automation.id} completed: {result.status.value} - {message}"
            )
            return completed

        except Exception as e:
            logger.error(f"Automation {automation.id} run failed: {e}", exc_info=True)
            return self._finish(log, RunStatus.ERROR, str(e))

    def _finish(self, log: RunLog, status: RunStatus, message: str) -> RunLog:
        completed = log.complete(status, message, self._platform.get_current_time())
        try:
            self._store.save_run_log(completed)
        except ValueError as e:
            logger.warning(f"Could not save run log for automation {log.automation_id}: {e}")
        return completed

    def _build_context(self, now: datetime, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Runtime context that condition fields are resolved against."""
        context = dict(self._platform.get_context())
        local = now.astimezone(self._config.tz)
        context["time"] = {
            "hour": local.hour,
            "minute": local.minute,
            "weekday": local.isoweekday() % 7,  # 0 = Sunday
            "date": local.date().isoformat(),
        }
        context["trigger"] = dict(payload)
        for key in ("value", "sensor_type", "equipment_id"):
            if key in payload:
                context[key] = payload[key]
        return context

    def _publish_executed(
        self, automation: Automation, source: str, result: ExecutionResult
    ) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            Event(
                type=EXECUTED_EVENT,
                source="automation",
                payload={
                    "automation_id": automation.id,
                    "name": automation.name,
                    "source": source,
                    "status": result.status.value,
                    "actions": len(automation.actions),
                },
                timestamp=self._platform.get_current_time(),
            )
        )

    @staticmethod
    def _is_once(automation: Automation) -> bool:
        trigger = automation.trigger
        return isinstance(trigger, ScheduleTrigger) and trigger.kind == ScheduleKind.ONCE

    def _disable_after_once(self, automation: Automation) -> None:
        # Timers from the final run keep running; only future fires stop
        if not self._config.disable_once_after_fire:
            return
        try:
            self._store.set_enabled(automation.id, False)
        except ValueError:
            return
        disabled = self._store.get(automation.id)
        if disabled is not None:
            self._scheduler.register(disabled)
        logger.info(f"Automation {automation.id} disabled after its one-time run")
