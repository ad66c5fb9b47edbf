"""
Action execution for the Automation engine.

Actions run in list order. A delayed action is handed to the timer service
and the sequence moves on immediately, so delays order the scheduling of
actions, not their completion. Actions are independent: one failure is
recorded and the rest still run.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .errors import ExecutionError
from .models import (
    ActionPreview,
    AlertAction,
    Automation,
    ControlAction,
    ControlCommand,
    LogAction,
    RunStatus,
)
from .timers import DELAY, REVERT, TimerKey, TimerService

if TYPE_CHECKING:
    from .adapter import EquipmentPlatform

logger = logging.getLogger(__name__)

# Guard checked before every action and timer: is this run still current?
RunGuard = Callable[[int, int], bool]

INVERSE_COMMANDS = {
    ControlCommand.ON: ControlCommand.OFF,
    ControlCommand.TOGGLE: ControlCommand.TOGGLE,
}


@dataclass
class ActionOutcome:
    """What happened to one action in a live run."""

    index: int  # 1-based position in the action list
    type: str
    status: str  # "executed", "scheduled", "error" or "cancelled"
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"index": self.index, "type": self.type, "status": self.status, **self.details}
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class ExecutionResult:
    """Outcome of executing an automation's action list."""

    outcomes: List[ActionOutcome] = field(default_factory=list)

    @property
    def errors(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status == "error"]

    @property
    def status(self) -> RunStatus:
        return RunStatus.ERROR if self.errors else RunStatus.SUCCESS

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def summary(self, source: str) -> str:
        """One-line summary for the run log."""
        if self.errors:
            first = self.errors[0]
            return (
                f"{len(self.errors)} of {len(self.outcomes)} action(s) failed: "
                f"action {first.index} ({first.type}): {first.error}"
            )
        parts = [f"{self.count('executed')} executed"]
        if self.count("scheduled"):
            parts.append(f"{self.count('scheduled')} scheduled")
        if self.count("cancelled"):
            parts.append(f"{self.count('cancelled')} cancelled")
        return f"{source} trigger executed ({', '.join(parts)})"


class ActionExecutor:
    """
    Executes or simulates an automation's actions.

    Live runs call the platform and may schedule timers; simulations only
    describe what would happen and never touch the platform's side effects
    or the timer service.
    """

    def __init__(self, platform: "EquipmentPlatform", timers: TimerService) -> None:
        self._platform = platform
        self._timers = timers

    # =========================================================================
    # Live Execution
    # =========================================================================

    def execute(
        self,
        automation: Automation,
        epoch: int,
        is_current: RunGuard,
        now: datetime,
        equipment_id: Optional[int] = None,
    ) -> ExecutionResult:
        """
        Execute all actions of an automation.

        Args:
            automation: The automation being run
            epoch: Run generation; timers carry it so stale ones can be ignored
            is_current: Guard telling whether the run was cancelled meanwhile
            now: Current time (base for delay/duration timers)
            equipment_id: Equipment that caused the run, attached to alerts

        Returns:
            Per-action outcomes
        """
        result = ExecutionResult()

        for position, action in enumerate(automation.actions):
            index = position + 1
            action_type = action.action_type.value

            if not is_current(automation.id, epoch):
                logger.info(
                    f"Automation {automation.id} cancelled, skipping action {index} ({action_type})"
                )
                result.outcomes.append(ActionOutcome(index, action_type, "cancelled"))
                continue

            try:
                if isinstance(action, AlertAction):
                    self._platform.create_alert(
                        action.severity.value, action.message, equipment_id
                    )
                    outcome = ActionOutcome(
                        index,
                        action_type,
                        "executed",
                        {"severity": action.severity.value, "message": action.message},
                    )

                elif isinstance(action, LogAction):
                    self._platform.write_log(action.message, automation.id)
                    logger.info(f"Automation {automation.id} log: {action.message}")
                    outcome = ActionOutcome(
                        index, action_type, "executed", {"message": action.message}
                    )

                elif action.channel is None and self._platform.get_channels(action.equipment_id):
                    outcome = self._control_channels(
                        automation.id, position, epoch, action, is_current, now
                    )

                elif action.delay_seconds:
                    self._schedule_delayed(
                        automation.id, position, epoch, action, is_current, now, action.delay_seconds
                    )
                    outcome = ActionOutcome(
                        index, action_type, "scheduled", self._control_details(action)
                    )

                else:
                    status = self._apply_control(
                        automation.id, position, epoch, action, is_current, now
                    )
                    details = self._control_details(action)
                    details["result"] = status
                    outcome = ActionOutcome(index, action_type, "executed", details)

            except ExecutionError as e:
                logger.warning(
                    f"Automation {automation.id} action {index} ({action_type}) failed: {e}"
                )
                outcome = ActionOutcome(index, action_type, "error", error=str(e))
            except Exception as e:
                logger.error(
                    f"Unexpected error in automation {automation.id} action {index}: {e}",
                    exc_info=True,
                )
                outcome = ActionOutcome(index, action_type, "error", error=str(e))

            result.outcomes.append(outcome)

        return result

    def _apply_control(
        self,
        automation_id: int,
        position: int,
        epoch: int,
        action: ControlAction,
        is_current: RunGuard,
        now: datetime,
        fan_out: bool = False,
    ) -> str:
        """Send the control command and schedule the auto-revert if configured."""
        status = self._platform.control(
            action.equipment_id, action.action.value, action.channel, action.value
        )
        logger.info(
            f"Control executed: equipment {action.equipment_id} "
            f"ch {self._channel_label(action.channel)} -> {action.action.value}"
        )

        if action.reverts and is_current(automation_id, epoch):
            inverse = INVERSE_COMMANDS[action.action]

            def revert(fired_at: datetime) -> None:
                if not is_current(automation_id, epoch):
                    logger.info(f"Skipping stale auto-revert for automation {automation_id}")
                    return
                self._platform.control(action.equipment_id, inverse.value, action.channel)
                logger.info(
                    f"Auto-revert completed for equipment {action.equipment_id} "
                    f"ch {self._channel_label(action.channel)} -> {inverse.value}"
                )

            self._timers.schedule(
                TimerKey(automation_id, position, REVERT, epoch, self._key_channel(action, fan_out)),
                now + timedelta(seconds=action.duration_seconds),
                revert,
                f"({inverse.value} equipment {action.equipment_id}"
                f" ch {self._channel_label(action.channel)})",
            )

        return status

    def _schedule_delayed(
        self,
        automation_id: int,
        position: int,
        epoch: int,
        action: ControlAction,
        is_current: RunGuard,
        now: datetime,
        delay: float,
        fan_out: bool = False,
    ) -> datetime:
        def deferred(fired_at: datetime) -> None:
            if not is_current(automation_id, epoch):
                logger.info(f"Skipping stale delayed action for automation {automation_id}")
                return
            self._apply_control(
                automation_id, position, epoch, action, is_current, fired_at, fan_out
            )

        fire_at = now + timedelta(seconds=delay)
        self._timers.schedule(
            TimerKey(automation_id, position, DELAY, epoch, self._key_channel(action, fan_out)),
            fire_at,
            deferred,
            f"({action.action.value} equipment {action.equipment_id}"
            f" ch {self._channel_label(action.channel)})",
        )
        return fire_at

    def _control_channels(
        self,
        automation_id: int,
        position: int,
        epoch: int,
        action: ControlAction,
        is_current: RunGuard,
        now: datetime,
    ) -> ActionOutcome:
        """
        Fan a channel-less control action out over the equipment's channels.

        Channel i is sent i * stagger_delay_seconds after the run; the first
        channel alone honours delay_seconds. Each channel has its own delay
        and auto-revert timers, so cancelling the automation cancels them all.
        A failing channel does not stop the others.
        """
        index = position + 1
        channels = self._platform.get_channels(action.equipment_id)
        stagger = action.stagger_delay_seconds or 0
        results: List[Dict[str, Any]] = []
        errors: List[str] = []

        for i, channel in enumerate(channels):
            channel_action = replace(
                action,
                channel=channel,
                delay_seconds=action.delay_seconds if i == 0 else None,
                stagger_delay_seconds=None,
            )
            offset = (action.delay_seconds or 0) if i == 0 else i * stagger
            entry: Dict[str, Any] = {"channel": channel}

            if offset:
                fire_at = self._schedule_delayed(
                    automation_id, position, epoch, channel_action, is_current, now, offset, True
                )
                entry.update(status="scheduled", fire_at=fire_at.isoformat())

            elif not is_current(automation_id, epoch):
                entry["status"] = "cancelled"

            else:
                try:
                    entry["result"] = self._apply_control(
                        automation_id, position, epoch, channel_action, is_current, now, True
                    )
                    entry["status"] = "executed"
                except ExecutionError as e:
                    logger.warning(
                        f"Automation {automation_id} action {index} channel {channel} failed: {e}"
                    )
                    entry.update(status="error", error=str(e))
                    errors.append(f"channel {channel}: {e}")

            results.append(entry)

        details = self._control_details(action)
        details["channels"] = results
        if errors:
            return ActionOutcome(index, "control", "error", details, "; ".join(errors))
        deferred = any(entry["status"] == "scheduled" for entry in results)
        return ActionOutcome(index, "control", "scheduled" if deferred else "executed", details)

    @staticmethod
    def _key_channel(action: ControlAction, fan_out: bool) -> Optional[int]:
        return action.channel if fan_out else None

    @staticmethod
    def _channel_label(channel: Optional[int]) -> str:
        return "all" if channel is None else str(channel)

    @staticmethod
    def _control_details(action: ControlAction) -> Dict[str, Any]:
        return {
            "action": action.action.value,
            "equipment_id": action.equipment_id,
            "channel": action.channel,
            "value": action.value,
            "delay_seconds": action.delay_seconds,
            "duration_seconds": action.duration_seconds,
            "stagger_delay_seconds": action.stagger_delay_seconds,
        }

    # =========================================================================
    # Simulation
    # =========================================================================

    def simulate(self, automation: Automation, conditions_met: bool) -> List[ActionPreview]:
        """
        Describe what each action would do, without doing it.

        Args:
            automation: The automation to simulate
            conditions_met: Whether the condition gate passed

        Returns:
            One preview per action
        """
        previews: List[ActionPreview] = []

        for index, action in enumerate(automation.actions, start=1):
            would_execute = conditions_met

            if isinstance(action, AlertAction):
                details: Dict[str, Any] = {
                    "severity": action.severity.value,
                    "message": action.message,
                    "simulation_note": "Would create alert (NOT CREATED during test)",
                }
            elif isinstance(action, LogAction):
                details = {
                    "message": action.message,
                    "simulation_note": "Would log event (NOT LOGGED during test)",
                }
            else:
                equipment = self._platform.get_equipment(action.equipment_id)
                details = self._control_details(action)
                details["channel"] = self._channel_label(action.channel)
                details["equipment"] = equipment.get("name") if equipment else "Unknown"
                details["equipment_status"] = equipment.get("status") if equipment else None
                channels = self._platform.get_channels(action.equipment_id)
                if action.channel is None and channels:
                    details["channels"] = channels
                details["simulation_note"] = self._control_note(action, channels)
                if equipment is None:
                    would_execute = False
                    details["reason"] = "equipment not found"

            if not conditions_met:
                details.setdefault("reason", "conditions not met")

            previews.append(
                ActionPreview(
                    index=index,
                    type=action.action_type.value,
                    would_execute=would_execute,
                    details=details,
                )
            )

        return previews

    def _control_note(self, action: ControlAction, channels: List[int]) -> str:
        note = "Would"
        if action.delay_seconds:
            note += f" wait {action.delay_seconds:g}s then"
        note += f" send '{action.action.value}' to equipment {action.equipment_id}"
        if action.channel is None and channels:
            note += f" channels {', '.join(str(c) for c in channels)}"
            if action.stagger_delay_seconds and len(channels) > 1:
                note += f" {action.stagger_delay_seconds:g}s apart"
        else:
            note += f" channel {self._channel_label(action.channel)}"
        if action.reverts:
            inverse = INVERSE_COMMANDS[action.action].value
            note += f" with '{inverse}' after {action.duration_seconds:g}s"
        return note + " (NOT SENT during test)"
