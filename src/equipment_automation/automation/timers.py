"""
Cancellable deferred tasks for delayed and auto-reverting actions.

Every pending timer is recorded here, bucketed per automation so cancelling
an automation's timers does not scan anyone else's. Within a bucket, a new
timer for the same slot (action, purpose, channel) replaces the pending one,
so a newer run supersedes an older run's delay or auto-off.

Once the engine is started, timers are also handed to its APScheduler
instance as "date" jobs and fire on the scheduler's worker pool. Without a
scheduler (tests, hosts with their own loop) they fire when run_due(now) is
called, which is how tests drive them with a mock clock.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

logger = logging.getLogger(__name__)

DELAY = "delay"
REVERT = "revert"


@dataclass(frozen=True)
class TimerKey:
    """Identifies a deferred task: which automation, action, purpose and run."""

    automation_id: int
    action_index: int
    purpose: str  # DELAY or REVERT
    epoch: int  # Run generation that scheduled it
    channel: Optional[int] = None  # Set when an action fans out over channels

    @property
    def slot(self) -> Tuple[int, str, Optional[int]]:
        return (self.action_index, self.purpose, self.channel)

    @property
    def job_id(self) -> str:
        """Scheduler job id; shared by every run's timer for the same slot."""
        job_id = f"{self.purpose}:{self.automation_id}:{self.action_index}"
        if self.channel is not None:
            job_id += f":ch{self.channel}"
        return job_id

    def __str__(self) -> str:
        return f"{self.job_id}@{self.epoch}"


TimerCallback = Callable[[datetime], None]


@dataclass
class PendingTimer:
    key: TimerKey
    fire_at: datetime
    callback: TimerCallback
    description: str = ""


class TimerService:
    """
    Tracks pending deferred tasks.

    Callbacks run on a scheduler worker once attach() was called, otherwise
    on the thread that calls run_due(). Exceptions are logged and never stop
    other timers.
    """

    def __init__(self) -> None:
        self._buckets: Dict[int, Dict[Tuple[int, str, Optional[int]], PendingTimer]] = {}
        self._lock = threading.Lock()
        self._scheduler: Optional[BaseScheduler] = None

    # =========================================================================
    # Scheduler Hand-off
    # =========================================================================

    def attach(self, scheduler: BaseScheduler) -> None:
        """Fire pending and future timers as jobs of this scheduler."""
        with self._lock:
            self._scheduler = scheduler
            for bucket in self._buckets.values():
                for timer in bucket.values():
                    self._add_job(timer)
        logger.debug("Timer service attached to scheduler")

    def detach(self) -> None:
        """Stop handing timers to the scheduler and remove their jobs."""
        with self._lock:
            for bucket in self._buckets.values():
                for timer in bucket.values():
                    self._remove_job(timer.key)
            self._scheduler = None

    def _add_job(self, timer: PendingTimer) -> None:
        # Caller holds the lock
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            self._fire,
            "date",
            run_date=timer.fire_at,
            args=[timer.key],
            id=timer.key.job_id,
            name=str(timer.key),
            replace_existing=True,
            misfire_grace_time=None,
        )

    def _remove_job(self, key: TimerKey) -> None:
        # Caller holds the lock
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(key.job_id)
        except JobLookupError:
            pass  # Already fired

    def _fire(self, key: TimerKey) -> None:
        """Scheduler job entry point."""
        with self._lock:
            bucket = self._buckets.get(key.automation_id)
            timer = bucket.get(key.slot) if bucket else None
            if timer is None or timer.key != key:
                logger.debug(f"Timer {key} no longer pending")
                return
            del bucket[key.slot]
            if not bucket:
                del self._buckets[key.automation_id]
        self._run(timer, timer.fire_at)

    # =========================================================================
    # Timers
    # =========================================================================

    def schedule(
        self,
        key: TimerKey,
        fire_at: datetime,
        callback: TimerCallback,
        description: str = "",
    ) -> None:
        """Schedule a callback, replacing any pending timer in the same slot."""
        timer = PendingTimer(key=key, fire_at=fire_at, callback=callback, description=description)

        with self._lock:
            bucket = self._buckets.setdefault(key.automation_id, {})
            replaced = bucket.get(key.slot)
            bucket[key.slot] = timer
            self._add_job(timer)

        if replaced:
            logger.info(f"Replaced pending timer {replaced.key} with {key}")
        logger.info(f"Scheduled {key} at {fire_at.isoformat()} {description}".rstrip())

    def cancel(self, key: TimerKey) -> bool:
        """Cancel one timer if it is still the pending one for its slot."""
        with self._lock:
            bucket = self._buckets.get(key.automation_id)
            if not bucket or key.slot not in bucket or bucket[key.slot].key != key:
                return False
            del bucket[key.slot]
            if not bucket:
                del self._buckets[key.automation_id]
            self._remove_job(key)
        logger.debug(f"Cancelled timer {key}")
        return True

    def cancel_automation(self, automation_id: int) -> int:
        """Cancel every pending timer of an automation. Returns how many."""
        with self._lock:
            bucket = self._buckets.pop(automation_id, {})
            for timer in bucket.values():
                self._remove_job(timer.key)
        if bucket:
            logger.info(f"Cancelled {len(bucket)} timer(s) for automation {automation_id}")
        return len(bucket)

    def run_due(self, now: datetime) -> int:
        """
        Run every timer whose deadline has passed.

        Args:
            now: Current time

        Returns:
            Number of timers that fired
        """
        due: List[PendingTimer] = []
        with self._lock:
            for automation_id in list(self._buckets):
                bucket = self._buckets[automation_id]
                for slot, timer in list(bucket.items()):
                    if timer.fire_at <= now:
                        due.append(timer)
                        del bucket[slot]
                        self._remove_job(timer.key)
                if not bucket:
                    del self._buckets[automation_id]

        due.sort(key=lambda t: (t.fire_at, t.key.automation_id, t.key.action_index))
        for timer in due:
            self._run(timer, now)
        return len(due)

    def _run(self, timer: PendingTimer, now: datetime) -> None:
        logger.info(f"Timer {timer.key} firing")
        try:
            timer.callback(now)
        except Exception as e:
            logger.error(f"Timer {timer.key} failed: {e}", exc_info=True)

    def next_deadline(self) -> Optional[datetime]:
        """Earliest pending deadline, or None if nothing is pending."""
        with self._lock:
            deadlines = [t.fire_at for b in self._buckets.values() for t in b.values()]
        return min(deadlines) if deadlines else None

    def pending(self, automation_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """List pending timers (for debugging)."""
        with self._lock:
            timers = [
                t
                for aid, bucket in self._buckets.items()
                if automation_id is None or aid == automation_id
                for t in bucket.values()
            ]
        return [
            {
                "key": str(t.key),
                "automation_id": t.key.automation_id,
                "action_index": t.key.action_index,
                "purpose": t.key.purpose,
                "channel": t.key.channel,
                "fire_at": t.fire_at.isoformat(),
                "description": t.description,
            }
            for t in sorted(timers, key=lambda t: t.fire_at)
        ]

    def shutdown(self) -> int:
        """Drop all pending timers (call on process shutdown)."""
        with self._lock:
            count = sum(len(b) for b in self._buckets.values())
            for bucket in self._buckets.values():
                for timer in bucket.values():
                    self._remove_job(timer.key)
            self._buckets.clear()
            self._scheduler = None
        logger.info(f"Shutting down, cleared {count} timer(s)")
        return count
