"""
Automation store: persistence interface consumed by the engine.

The store owns automations and their run history. The engine reads
automations through it and writes back run statistics and run logs.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Deque, Dict, List, Optional

from .models import Automation, RunLog, RunStatus

logger = logging.getLogger(__name__)


class AutomationStore(ABC):
    """
    Abstract persistence interface for automations and run logs.

    The host application provides a concrete implementation (database,
    API client, ...). Missing IDs raise ValueError.
    """

    @abstractmethod
    def list_automations(self) -> List[Automation]:
        """List all automations."""
        pass

    @abstractmethod
    def get(self, automation_id: int) -> Optional[Automation]:
        """Get an automation, or None if it doesn't exist."""
        pass

    @abstractmethod
    def create(self, automation: Automation) -> Automation:
        """Persist a new automation and return it with its assigned ID."""
        pass

    @abstractmethod
    def update(self, automation: Automation) -> Automation:
        """Replace the stored configuration of an existing automation."""
        pass

    @abstractmethod
    def delete(self, automation_id: int) -> bool:
        """Delete an automation and its history. Returns False if not found."""
        pass

    @abstractmethod
    def set_enabled(self, automation_id: int, enabled: bool) -> None:
        """Enable or disable an automation."""
        pass

    @abstractmethod
    def record_run(
        self,
        automation_id: int,
        last_run: datetime,
        last_status: RunStatus,
    ) -> Automation:
        """Increment run_count and store last_run/last_status."""
        pass

    @abstractmethod
    def add_run_log(self, log: RunLog) -> RunLog:
        """Append a new (pending) run log and return it with its ID."""
        pass

    @abstractmethod
    def save_run_log(self, log: RunLog) -> RunLog:
        """Store the finalized version of a pending run log."""
        pass

    @abstractmethod
    def get_run_logs(self, automation_id: int, limit: int = 20) -> List[RunLog]:
        """Get run logs for an automation (newest first)."""
        pass


class InMemoryAutomationStore(AutomationStore):
    """
    In-memory automation store.

    Used for tests, demos, and hosts that load automations from elsewhere.
    Returns copies so callers cannot mutate stored state by accident.
    """

    def __init__(self, history_size: int = 100) -> None:
        """
        Initialize an empty store.

        Args:
            history_size: Run logs kept per automation (oldest dropped first)
        """
        self._automations: Dict[int, Automation] = {}
        self._logs: Dict[int, Deque[RunLog]] = {}
        self._history_size = history_size
        self._automation_ids = itertools.count(1)
        self._log_ids = itertools.count(1)
        self._lock = threading.RLock()

    def _require(self, automation_id: int) -> Automation:
        automation = self._automations.get(automation_id)
        if automation is None:
            raise ValueError(f"Automation {automation_id} does not exist")
        return automation

    def list_automations(self) -> List[Automation]:
        with self._lock:
            automations = sorted(
                self._automations.values(), key=lambda a: (a.priority, a.name)
            )
            return [replace(a) for a in automations]

    def get(self, automation_id: int) -> Optional[Automation]:
        with self._lock:
            automation = self._automations.get(automation_id)
            return replace(automation) if automation else None

    def create(self, automation: Automation) -> Automation:
        with self._lock:
            automation_id = automation.id
            if automation_id is None:
                automation_id = next(self._automation_ids)
                while automation_id in self._automations:
                    automation_id = next(self._automation_ids)
            elif automation_id in self._automations:
                raise ValueError(f"Automation with id {automation_id} already exists")

            stored = replace(automation, id=automation_id)
            self._automations[automation_id] = stored
            self._logs[automation_id] = deque(maxlen=self._history_size)
        logger.info(f"Created automation: {automation_id} ({stored.name})")
        return replace(stored)

    def update(self, automation: Automation) -> Automation:
        with self._lock:
            current = self._require(automation.id)
            # Run statistics belong to the engine, not to config edits
            stored = replace(
                automation,
                run_count=current.run_count,
                last_run=current.last_run,
                last_status=current.last_status,
            )
            self._automations[automation.id] = stored
        logger.info(f"Updated automation: {automation.id} ({stored.name})")
        return replace(stored)

    def delete(self, automation_id: int) -> bool:
        with self._lock:
            if self._automations.pop(automation_id, None) is None:
                return False
            self._logs.pop(automation_id, None)
        logger.info(f"Deleted automation: {automation_id}")
        return True

    def set_enabled(self, automation_id: int, enabled: bool) -> None:
        with self._lock:
            current = self._require(automation_id)
            self._automations[automation_id] = replace(current, enabled=enabled)
        logger.info(f"Automation {automation_id} {'enabled' if enabled else 'disabled'}")

    def record_run(
        self,
        automation_id: int,
        last_run: datetime,
        last_status: RunStatus,
    ) -> Automation:
        with self._lock:
            current = self._require(automation_id)
            stored = replace(
                current,
                run_count=current.run_count + 1,
                last_run=last_run,
                last_status=last_status,
            )
            self._automations[automation_id] = stored
            return replace(stored)

    def add_run_log(self, log: RunLog) -> RunLog:
        with self._lock:
            self._require(log.automation_id)
            stored = replace(log, id=next(self._log_ids))
            self._logs[log.automation_id].append(stored)
            return stored

    def save_run_log(self, log: RunLog) -> RunLog:
        with self._lock:
            logs = self._logs.get(log.automation_id)
            if logs is None:
                raise ValueError(f"Automation {log.automation_id} does not exist")
            for position, existing in enumerate(logs):
                if existing.id == log.id:
                    if existing.is_complete:
                        raise ValueError(f"Run log {log.id} is complete and cannot change")
                    logs[position] = log
                    return log
            raise ValueError(f"Run log {log.id} does not exist")

    def get_run_logs(self, automation_id: int, limit: int = 20) -> List[RunLog]:
        with self._lock:
            logs = self._logs.get(automation_id, deque())
            return list(reversed(logs))[:limit]
