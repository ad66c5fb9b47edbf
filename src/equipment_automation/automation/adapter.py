"""
Platform adapter interface for the Automation engine.

The adapter is the engine's only path to the outside world: equipment
control, the alert sink, the automation log, equipment state, and the
clock. The host application (Modbus backend, API server, ...) provides a
concrete implementation.

Design Principle:
    The adapter is intentionally minimal. Protocol details (addresses,
    coils, retries) belong to the host. The engine asks for "turn channel 2
    of equipment 5 on" and gets back a status or an ExecutionError.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .errors import ExecutionError


class EquipmentPlatform(ABC):
    """
    Abstract interface for platform operations.

    This interface is intentionally minimal:
    - control: Send a command to equipment
    - create_alert: Raise an alert
    - write_log: Append to the automation log
    - get_equipment: Look up equipment (for simulation)
    - get_latest_reading: Latest sensor value (for simulation)
    - get_context: Extra values conditions can reference
    - get_current_time: Get current time
    """

    @abstractmethod
    def control(
        self,
        equipment_id: int,
        action: str,
        channel: Optional[int] = None,
        value: Optional[Any] = None,
    ) -> str:
        """
        Send a control command to equipment.

        Args:
            equipment_id: Target equipment
            action: "on", "off", "toggle" or "set"
            channel: Channel/coil on the equipment (None = all channels)
            value: Value for "set"

        Returns:
            Resulting status string (e.g. "on")

        Raises:
            ExecutionError: If the equipment is unreachable or rejects the command
        """
        pass

    @abstractmethod
    def create_alert(
        self,
        severity: str,
        message: str,
        equipment_id: Optional[int] = None,
    ) -> None:
        """
        Create an alert.

        Raises:
            ExecutionError: If the alert could not be stored
        """
        pass

    @abstractmethod
    def write_log(self, message: str, automation_id: Optional[int] = None) -> None:
        """Append a line to the automation log."""
        pass

    @abstractmethod
    def get_equipment(self, equipment_id: int) -> Optional[Dict[str, Any]]:
        """
        Look up equipment.

        Returns:
            Equipment info (at least "name" and "status"), or None if unknown
        """
        pass

    def get_channels(self, equipment_id: int) -> List[int]:
        """
        Read-write channels of the equipment, in control order.

        A control action without a channel fans out over these. The default
        (no channels known) sends one command with channel None instead.
        """
        return []

    @abstractmethod
    def get_latest_reading(self, equipment_id: int, sensor_type: str) -> Optional[Any]:
        """Latest known value of a sensor, or None if never seen."""
        pass

    def get_context(self) -> Dict[str, Any]:
        """
        Extra values that conditions can reference by field name.

        Default implementation provides nothing.
        """
        return {}

    @abstractmethod
    def get_current_time(self) -> datetime:
        """
        Get current time from platform.

        Returns:
            Current datetime (timezone-aware)
        """
        pass


class MockEquipmentPlatform(EquipmentPlatform):
    """
    Mock adapter for testing.

    Tracks control calls, alerts and log lines, and allows setting
    equipment, readings and the current time.
    """

    def __init__(self) -> None:
        self._equipment: Dict[int, Dict[str, Any]] = {}
        self._readings: Dict[Tuple[int, str], Any] = {}
        self._channel_states: Dict[Tuple[int, Optional[int]], Any] = {}
        self._failing: Set[int] = set()
        self._channels: Dict[int, List[int]] = {}
        self._context: Dict[str, Any] = {}
        self._current_time: Optional[datetime] = None
        self.control_calls: List[Tuple[int, str, Optional[int], Optional[Any]]] = []
        self.alerts: List[Tuple[str, str, Optional[int]]] = []
        self.log_lines: List[Tuple[str, Optional[int]]] = []
        self.on_control: Optional[Callable[[int, str], None]] = None

    def add_equipment(
        self,
        equipment_id: int,
        name: str,
        status: str = "online",
        channels: Optional[List[int]] = None,
    ) -> None:
        """Register equipment for testing, optionally with read-write channels."""
        self._equipment[equipment_id] = {"id": equipment_id, "name": name, "status": status}
        self._channels[equipment_id] = list(channels or [])

    def set_failing(self, equipment_id: int, failing: bool = True) -> None:
        """Make control calls to this equipment raise ExecutionError."""
        if failing:
            self._failing.add(equipment_id)
        else:
            self._failing.discard(equipment_id)

    def set_reading(self, equipment_id: int, sensor_type: str, value: Any) -> None:
        """Set the latest reading (also exposed in the context)."""
        self._readings[(equipment_id, sensor_type)] = value
        self._context[f"equipment.{equipment_id}.{sensor_type}"] = value

    def set_context_value(self, key: str, value: Any) -> None:
        """Set an arbitrary context value for conditions."""
        self._context[key] = value

    def set_current_time(self, dt: datetime) -> None:
        """Set current time for testing."""
        self._current_time = dt

    def advance(self, seconds: float) -> datetime:
        """Move the mock clock forward and return the new time."""
        self._current_time = self.get_current_time() + timedelta(seconds=seconds)
        return self._current_time

    def get_channel_state(self, equipment_id: int, channel: Optional[int] = None) -> Any:
        """Last state commanded on a channel."""
        return self._channel_states.get((equipment_id, channel))

    # EquipmentPlatform implementation

    def control(
        self,
        equipment_id: int,
        action: str,
        channel: Optional[int] = None,
        value: Optional[Any] = None,
    ) -> str:
        if self.on_control:
            self.on_control(equipment_id, action)
        if equipment_id in self._failing:
            raise ExecutionError(
                f"Equipment {equipment_id} unreachable", {"equipment_id": equipment_id}
            )

        self.control_calls.append((equipment_id, action, channel, value))

        key = (equipment_id, channel)
        if action == "toggle":
            state = "off" if self._channel_states.get(key) == "on" else "on"
        elif action == "set":
            state = value
        else:
            state = action
        self._channel_states[key] = state
        return str(state)

    def create_alert(
        self,
        severity: str,
        message: str,
        equipment_id: Optional[int] = None,
    ) -> None:
        self.alerts.append((severity, message, equipment_id))

    def write_log(self, message: str, automation_id: Optional[int] = None) -> None:
        self.log_lines.append((message, automation_id))

    def get_equipment(self, equipment_id: int) -> Optional[Dict[str, Any]]:
        return self._equipment.get(equipment_id)

    def get_channels(self, equipment_id: int) -> List[int]:
        return list(self._channels.get(equipment_id, []))

    def get_latest_reading(self, equipment_id: int, sensor_type: str) -> Optional[Any]:
        return self._readings.get((equipment_id, sensor_type))

    def get_context(self) -> Dict[str, Any]:
        return dict(self._context)

    def get_current_time(self) -> datetime:
        if self._current_time:
            return self._current_time
        return datetime.now(UTC)
