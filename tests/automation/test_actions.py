"""Tests for the action executor."""

from datetime import datetime, timedelta, UTC

import pytest

from equipment_automation.automation.actions import ActionExecutor
from equipment_automation.automation.adapter import MockEquipmentPlatform
from equipment_automation.automation.models import (
    AlertAction,
    Automation,
    ControlAction,
    ControlCommand,
    LogAction,
    ManualTrigger,
    RunStatus,
    Severity,
)
from equipment_automation.automation.timers import TimerService

T0 = datetime(2025, 1, 15, 8, 0, tzinfo=UTC)


def always_current(automation_id, epoch):
    return True


def make_automation(actions):
    return Automation(id=1, name="Test", trigger=ManualTrigger(), actions=actions)


@pytest.fixture
def platform():
    adapter = MockEquipmentPlatform()
    adapter.set_current_time(T0)
    adapter.add_equipment(5, "Pump")
    adapter.add_equipment(6, "Fan")
    return adapter


@pytest.fixture
def timers():
    return TimerService()


@pytest.fixture
def executor(platform, timers):
    return ActionExecutor(platform, timers)


class TestControlActions:
    """Tests for control actions, delays and auto-revert."""

    def test_immediate_control(self, executor, platform):
        automation = make_automation([ControlAction(5, ControlCommand.ON, channel=2)])
        result = executor.execute(automation, 0, always_current, T0)

        assert platform.control_calls == [(5, "on", 2, None)]
        assert result.outcomes[0].status == "executed"
        assert result.outcomes[0].details["result"] == "on"
        assert result.status == RunStatus.SUCCESS

    def test_set_passes_value(self, executor, platform):
        automation = make_automation([ControlAction(5, ControlCommand.SET, channel=1, value=42)])
        executor.execute(automation, 0, always_current, T0)
        assert platform.control_calls == [(5, "set", 1, 42)]

    def test_duration_reverts_after_ten_seconds(self, executor, platform, timers):
        """on with duration 10 -> control(on) at t0 and control(off) at t0+10s."""
        automation = make_automation([ControlAction(5, ControlCommand.ON, duration_seconds=10)])
        executor.execute(automation, 0, always_current, T0)

        assert platform.control_calls == [(5, "on", None, None)]
        assert timers.next_deadline() == T0 + timedelta(seconds=10)

        timers.run_due(platform.advance(9))
        assert platform.control_calls == [(5, "on", None, None)]

        timers.run_due(platform.advance(1))
        assert platform.control_calls == [(5, "on", None, None), (5, "off", None, None)]
        assert platform.get_channel_state(5) == "off"

    def test_toggle_reverts_with_toggle(self, executor, platform, timers):
        automation = make_automation([ControlAction(6, ControlCommand.TOGGLE, duration_seconds=5)])
        executor.execute(automation, 0, always_current, T0)
        timers.run_due(T0 + timedelta(seconds=5))

        assert [call[1] for call in platform.control_calls] == ["toggle", "toggle"]

    def test_off_has_no_revert(self, executor, timers):
        automation = make_automation([ControlAction(5, ControlCommand.OFF, duration_seconds=5)])
        executor.execute(automation, 0, always_current, T0)
        assert timers.pending() == []

    def test_delay_does_not_block_sequence(self, executor, platform, timers):
        """A delayed action is scheduled and the next action runs right away."""
        automation = make_automation(
            [
                ControlAction(5, ControlCommand.OFF, delay_seconds=30),
                LogAction(message="after delay"),
            ]
        )
        result = executor.execute(automation, 0, always_current, T0)

        assert [o.status for o in result.outcomes] == ["scheduled", "executed"]
        assert platform.control_calls == []
        assert platform.log_lines == [("after delay", 1)]

        timers.run_due(T0 + timedelta(seconds=30))
        assert platform.control_calls == [(5, "off", None, None)]

    def test_delay_then_duration(self, executor, platform, timers):
        automation = make_automation(
            [ControlAction(5, ControlCommand.ON, delay_seconds=5, duration_seconds=10)]
        )
        executor.execute(automation, 0, always_current, T0)

        timers.run_due(T0 + timedelta(seconds=5))
        assert platform.control_calls == [(5, "on", None, None)]
        assert timers.next_deadline() == T0 + timedelta(seconds=15)

        timers.run_due(T0 + timedelta(seconds=15))
        assert platform.control_calls[-1] == (5, "off", None, None)

    def test_completion_order_follows_delays(self, executor, platform, timers):
        automation = make_automation(
            [
                ControlAction(5, ControlCommand.ON, delay_seconds=20),
                ControlAction(6, ControlCommand.ON, delay_seconds=5),
            ]
        )
        executor.execute(automation, 0, always_current, T0)
        timers.run_due(T0 + timedelta(seconds=30))

        assert [call[0] for call in platform.control_calls] == [6, 5]


class TestChannelFanOut:
    """A control action without a channel goes to every read-write channel."""

    @pytest.fixture
    def relay(self, platform):
        platform.add_equipment(9, "Relay board", channels=[1, 2, 3])
        return platform

    def test_staggered_channels(self, executor, relay, timers):
        automation = make_automation(
            [ControlAction(9, ControlCommand.ON, stagger_delay_seconds=5)]
        )
        result = executor.execute(automation, 0, always_current, T0)

        assert relay.control_calls == [(9, "on", 1, None)]
        [outcome] = result.outcomes
        assert outcome.status == "scheduled"
        assert [c["status"] for c in outcome.details["channels"]] == [
            "executed",
            "scheduled",
            "scheduled",
        ]
        assert [t["channel"] for t in timers.pending(1)] == [2, 3]

        timers.run_due(relay.advance(5))
        assert relay.control_calls[-1] == (9, "on", 2, None)

        timers.run_due(relay.advance(5))
        assert relay.control_calls == [(9, "on", 1, None), (9, "on", 2, None), (9, "on", 3, None)]

    def test_without_stagger_all_channels_at_once(self, executor, relay, timers):
        automation = make_automation([ControlAction(9, ControlCommand.OFF)])
        result = executor.execute(automation, 0, always_current, T0)

        assert [call[2] for call in relay.control_calls] == [1, 2, 3]
        assert result.outcomes[0].status == "executed"
        assert timers.pending() == []

    def test_only_first_channel_waits_for_delay(self, executor, relay, timers):
        automation = make_automation(
            [ControlAction(9, ControlCommand.ON, delay_seconds=30, stagger_delay_seconds=5)]
        )
        executor.execute(automation, 0, always_current, T0)

        fire_times = {t["channel"]: t["fire_at"] for t in timers.pending(1)}
        assert fire_times == {
            1: (T0 + timedelta(seconds=30)).isoformat(),
            2: (T0 + timedelta(seconds=5)).isoformat(),
            3: (T0 + timedelta(seconds=10)).isoformat(),
        }

    def test_each_channel_reverts(self, executor, relay, timers):
        automation = make_automation([ControlAction(9, ControlCommand.ON, duration_seconds=60)])
        executor.execute(automation, 0, always_current, T0)

        reverts = timers.pending(1)
        assert [(t["purpose"], t["channel"]) for t in reverts] == [
            ("revert", 1),
            ("revert", 2),
            ("revert", 3),
        ]

        timers.run_due(relay.advance(60))
        assert [relay.get_channel_state(9, c) for c in (1, 2, 3)] == ["off", "off", "off"]

    def test_cancel_drops_remaining_channels(self, executor, relay, timers):
        automation = make_automation(
            [ControlAction(9, ControlCommand.ON, stagger_delay_seconds=5)]
        )
        executor.execute(automation, 0, always_current, T0)

        assert timers.cancel_automation(1) == 2
        timers.run_due(relay.advance(60))
        assert relay.control_calls == [(9, "on", 1, None)]

    def test_stale_channel_timer_does_nothing(self, executor, relay, timers):
        current = {"epoch": 0}
        automation = make_automation(
            [ControlAction(9, ControlCommand.ON, stagger_delay_seconds=5)]
        )
        executor.execute(automation, 0, lambda aid, epoch: epoch == current["epoch"], T0)

        current["epoch"] = 1
        timers.run_due(relay.advance(60))
        assert relay.control_calls == [(9, "on", 1, None)]

    def test_failing_equipment_reports_every_channel(self, executor, relay):
        relay.set_failing(9)
        automation = make_automation([ControlAction(9, ControlCommand.ON)])
        result = executor.execute(automation, 0, always_current, T0)

        [outcome] = result.outcomes
        assert outcome.status == "error"
        assert outcome.error.startswith("channel 1: Equipment 9 unreachable; channel 2:")
        assert result.status == RunStatus.ERROR

    def test_explicit_channel_is_not_fanned_out(self, executor, relay):
        automation = make_automation([ControlAction(9, ControlCommand.ON, channel=2)])
        executor.execute(automation, 0, always_current, T0)
        assert relay.control_calls == [(9, "on", 2, None)]

    def test_simulation_lists_channels(self, executor, relay):
        automation = make_automation(
            [ControlAction(9, ControlCommand.ON, stagger_delay_seconds=5)]
        )
        [preview] = executor.simulate(automation, True)

        assert preview.details["channels"] == [1, 2, 3]
        assert preview.details["simulation_note"] == (
            "Would send 'on' to equipment 9 channels 1, 2, 3 5s apart (NOT SENT during test)"
        )
        assert relay.control_calls == []


class TestIndependentActions:
    """A failed action is recorded and later actions still run."""

    def test_failure_does_not_block_later_actions(self, executor, platform):
        platform.set_failing(5)
        automation = make_automation(
            [
                ControlAction(5, ControlCommand.ON),
                AlertAction(severity=Severity.WARNING, message="Pump check"),
                LogAction(message="done"),
            ]
        )
        result = executor.execute(automation, 0, always_current, T0, equipment_id=5)

        assert [o.status for o in result.outcomes] == ["error", "executed", "executed"]
        assert result.outcomes[0].error == "Equipment 5 unreachable"
        assert platform.alerts == [("warning", "Pump check", 5)]
        assert platform.log_lines == [("done", 1)]
        assert result.status == RunStatus.ERROR
        assert result.summary("manual") == (
            "1 of 3 action(s) failed: action 1 (control): Equipment 5 unreachable"
        )

    def test_summary_counts(self, executor):
        automation = make_automation(
            [LogAction(message="now"), ControlAction(5, ControlCommand.ON, delay_seconds=10)]
        )
        result = executor.execute(automation, 0, always_current, T0)
        assert result.summary("schedule") == "schedule trigger executed (1 executed, 1 scheduled)"


class TestCancellation:
    """Tests for the run guard."""

    def test_cancelled_run_skips_remaining_actions(self, executor, platform):
        calls = []

        def guard(automation_id, epoch):
            calls.append(epoch)
            return len(calls) <= 1

        automation = make_automation(
            [ControlAction(5, ControlCommand.ON), ControlAction(6, ControlCommand.ON)]
        )
        result = executor.execute(automation, 0, guard, T0)

        assert [o.status for o in result.outcomes] == ["executed", "cancelled"]
        assert platform.control_calls == [(5, "on", None, None)]

    def test_stale_timers_do_nothing(self, executor, platform, timers):
        current = {"epoch": 0}

        def guard(automation_id, epoch):
            return epoch == current["epoch"]

        automation = make_automation(
            [
                ControlAction(5, ControlCommand.ON, duration_seconds=10),
                ControlAction(6, ControlCommand.ON, delay_seconds=10),
            ]
        )
        executor.execute(automation, 0, guard, T0)
        current["epoch"] = 1

        timers.run_due(T0 + timedelta(seconds=10))
        assert platform.control_calls == [(5, "on", None, None)]


class TestSimulation:
    """Tests for simulate mode."""

    def test_simulation_has_no_side_effects(self, executor, platform, timers):
        automation = make_automation(
            [
                AlertAction(severity=Severity.CRITICAL, message="Too hot"),
                ControlAction(5, ControlCommand.ON, channel=2, delay_seconds=5, duration_seconds=10),
                LogAction(message="logged"),
            ]
        )
        previews = executor.simulate(automation, conditions_met=True)

        assert platform.control_calls == []
        assert platform.alerts == []
        assert platform.log_lines == []
        assert timers.pending() == []

        assert [p.index for p in previews] == [1, 2, 3]
        assert [p.type for p in previews] == ["alert", "control", "log"]
        assert all(p.would_execute for p in previews)

        control = previews[1].details
        assert control["equipment"] == "Pump"
        assert control["channel"] == "2"
        assert control["simulation_note"] == (
            "Would wait 5s then send 'on' to equipment 5 channel 2 "
            "with 'off' after 10s (NOT SENT during test)"
        )

    def test_unknown_equipment_not_executable(self, executor):
        automation = make_automation([ControlAction(99, ControlCommand.ON)])
        [preview] = executor.simulate(automation, conditions_met=True)

        assert preview.would_execute is False
        assert preview.details["equipment"] == "Unknown"
        assert preview.details["reason"] == "equipment not found"

    def test_conditions_not_met(self, executor):
        automation = make_automation([LogAction(message="x"), ControlAction(5, ControlCommand.OFF)])
        previews = executor.simulate(automation, conditions_met=False)

        assert [p.would_execute for p in previews] == [False, False]
        assert all(p.details["reason"] == "conditions not met" for p in previews)
