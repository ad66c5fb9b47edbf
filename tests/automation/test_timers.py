"""Tests for the deferred task service."""

import threading
from datetime import datetime, timedelta, UTC

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from equipment_automation.automation.timers import DELAY, REVERT, TimerKey, TimerService

T0 = datetime(2025, 1, 15, 8, 0, tzinfo=UTC)


@pytest.fixture
def timers():
    return TimerService()


class TestTimerService:
    """Tests for scheduling, running and cancelling timers."""

    def test_runs_when_due(self, timers):
        fired = []
        timers.schedule(TimerKey(1, 0, DELAY, 0), T0 + timedelta(seconds=10), fired.append)

        assert timers.run_due(T0 + timedelta(seconds=9)) == 0
        assert fired == []

        assert timers.run_due(T0 + timedelta(seconds=10)) == 1
        assert fired == [T0 + timedelta(seconds=10)]

        # Fired timers are gone
        assert timers.run_due(T0 + timedelta(seconds=60)) == 0
        assert timers.next_deadline() is None

    def test_runs_in_deadline_order(self, timers):
        order = []
        timers.schedule(TimerKey(2, 0, DELAY, 0), T0 + timedelta(seconds=5), lambda now: order.append(2))
        timers.schedule(TimerKey(1, 0, DELAY, 0), T0 + timedelta(seconds=3), lambda now: order.append(1))

        timers.run_due(T0 + timedelta(seconds=10))
        assert order == [1, 2]

    def test_same_slot_replaces_pending(self, timers):
        fired = []
        timers.schedule(TimerKey(1, 0, REVERT, 0), T0 + timedelta(seconds=10), lambda now: fired.append("old"))
        timers.schedule(TimerKey(1, 0, REVERT, 1), T0 + timedelta(seconds=20), lambda now: fired.append("new"))

        assert len(timers.pending()) == 1
        timers.run_due(T0 + timedelta(seconds=30))
        assert fired == ["new"]

    def test_delay_and_revert_are_separate_slots(self, timers):
        timers.schedule(TimerKey(1, 0, DELAY, 0), T0, lambda now: None)
        timers.schedule(TimerKey(1, 0, REVERT, 0), T0, lambda now: None)
        assert len(timers.pending(1)) == 2

    def test_cancel_automation(self, timers):
        fired = []
        timers.schedule(TimerKey(1, 0, DELAY, 0), T0, lambda now: fired.append(1))
        timers.schedule(TimerKey(1, 1, REVERT, 0), T0, lambda now: fired.append(1))
        timers.schedule(TimerKey(2, 0, DELAY, 0), T0, lambda now: fired.append(2))

        assert timers.cancel_automation(1) == 2
        assert timers.cancel_automation(1) == 0

        timers.run_due(T0)
        assert fired == [2]

    def test_cancel_single_key(self, timers):
        key = TimerKey(1, 0, DELAY, 0)
        timers.schedule(key, T0, lambda now: None)

        assert timers.cancel(TimerKey(1, 0, DELAY, 5)) is False
        assert timers.cancel(key) is True
        assert timers.pending() == []

    def test_failing_callback_does_not_stop_others(self, timers):
        fired = []

        def boom(now):
            raise RuntimeError("boom")

        timers.schedule(TimerKey(1, 0, DELAY, 0), T0, boom)
        timers.schedule(TimerKey(2, 0, DELAY, 0), T0 + timedelta(seconds=1), fired.append)

        assert timers.run_due(T0 + timedelta(seconds=1)) == 2
        assert len(fired) == 1

    def test_callback_can_schedule_timer(self, timers):
        """A delayed action may schedule its own auto-revert."""
        fired = []

        def first(now):
            timers.schedule(TimerKey(1, 0, REVERT, 0), now + timedelta(seconds=10), fired.append)

        timers.schedule(TimerKey(1, 0, DELAY, 0), T0, first)
        timers.run_due(T0)

        assert timers.next_deadline() == T0 + timedelta(seconds=10)
        timers.run_due(T0 + timedelta(seconds=10))
        assert fired == [T0 + timedelta(seconds=10)]

    def test_channel_keys_are_separate_slots(self, timers):
        timers.schedule(TimerKey(1, 0, DELAY, 0, channel=1), T0, lambda now: None)
        timers.schedule(TimerKey(1, 0, DELAY, 0, channel=2), T0, lambda now: None)

        assert [e["channel"] for e in timers.pending(1)] == [1, 2]
        assert TimerKey(1, 0, DELAY, 0, channel=2).job_id == "delay:1:0:ch2"

    def test_pending_description(self, timers):
        timers.schedule(TimerKey(3, 1, REVERT, 2), T0, lambda now: None, "(off equipment 5)")
        [entry] = timers.pending()

        assert entry["key"] == "revert:3:1@2"
        assert entry["automation_id"] == 3
        assert entry["action_index"] == 1
        assert entry["purpose"] == REVERT
        assert entry["fire_at"] == T0.isoformat()
        assert entry["description"] == "(off equipment 5)"

    def test_shutdown(self, timers):
        timers.schedule(TimerKey(1, 0, DELAY, 0), T0, lambda now: None)
        timers.schedule(TimerKey(2, 0, DELAY, 0), T0, lambda now: None)

        assert timers.shutdown() == 2
        assert timers.pending() == []


@pytest.fixture
def paused_scheduler():
    scheduler = BackgroundScheduler()
    scheduler.start(paused=True)
    yield scheduler
    scheduler.shutdown(wait=False)


class TestSchedulerHandOff:
    """Tests for timers handed to a background scheduler as date jobs."""

    def test_attach_adds_jobs_for_pending_timers(self, timers, paused_scheduler):
        key = TimerKey(1, 0, DELAY, 0)
        timers.schedule(key, T0 + timedelta(seconds=10), lambda now: None)

        timers.attach(paused_scheduler)

        job = paused_scheduler.get_job(key.job_id)
        assert job is not None
        assert job.next_run_time == T0 + timedelta(seconds=10)

    def test_newer_run_replaces_job(self, timers, paused_scheduler):
        timers.attach(paused_scheduler)
        timers.schedule(TimerKey(1, 0, REVERT, 0), T0 + timedelta(seconds=10), lambda now: None)
        timers.schedule(TimerKey(1, 0, REVERT, 1), T0 + timedelta(seconds=20), lambda now: None)

        jobs = paused_scheduler.get_jobs()
        assert len(jobs) == 1
        assert jobs[0].name == "revert:1:0@1"
        assert jobs[0].next_run_time == T0 + timedelta(seconds=20)

    def test_cancel_automation_removes_jobs(self, timers, paused_scheduler):
        timers.attach(paused_scheduler)
        timers.schedule(TimerKey(1, 0, DELAY, 0), T0, lambda now: None)
        timers.schedule(TimerKey(1, 1, REVERT, 0), T0, lambda now: None)
        timers.schedule(TimerKey(2, 0, DELAY, 0), T0, lambda now: None)

        timers.cancel_automation(1)

        assert [job.id for job in paused_scheduler.get_jobs()] == ["delay:2:0"]

    def test_run_due_removes_job(self, timers, paused_scheduler):
        timers.attach(paused_scheduler)
        timers.schedule(TimerKey(1, 0, DELAY, 0), T0, lambda now: None)

        assert timers.run_due(T0) == 1
        assert paused_scheduler.get_jobs() == []

    def test_shutdown_removes_jobs(self, timers, paused_scheduler):
        timers.attach(paused_scheduler)
        timers.schedule(TimerKey(1, 0, DELAY, 0), T0, lambda now: None)

        timers.shutdown()
        assert paused_scheduler.get_jobs() == []

    def test_fires_on_scheduler_worker(self, timers):
        fired = threading.Event()
        seen = []

        def callback(now):
            seen.append((now, threading.current_thread() is threading.main_thread()))
            fired.set()

        scheduler = BackgroundScheduler()
        scheduler.start()
        try:
            timers.attach(scheduler)
            # Deadline already passed, so the job runs right away
            timers.schedule(TimerKey(1, 0, DELAY, 0), T0, callback)
            assert fired.wait(5)
        finally:
            timers.shutdown()
            scheduler.shutdown(wait=True)

        assert seen == [(T0, False)]
        assert timers.pending() == []
