"""
Event Bus implementation for equipment events and sensor readings.

The Event Bus is a simple, synchronous dispatcher. Handlers run on the
publisher's thread; publishing from several threads at once is safe.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

SENSOR_READING = "sensor.reading"


def _utc_now() -> datetime:
    """Get current UTC time (for default factory)."""
    return datetime.now(UTC)


@dataclass
class Event:
    """
    A domain event.

    Attributes:
        type: Event type (e.g., "sensor.reading", "equipment.offline")
        source: Event source (e.g., "modbus", "automation")
        equipment_id: Optional equipment ID this event relates to
        payload: Event-specific data
        timestamp: When the event occurred
    """

    type: str
    source: str
    equipment_id: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utc_now)


def reading_event(
    equipment_id: int,
    sensor_type: str,
    value: Any,
    timestamp: Optional[datetime] = None,
    source: str = "sensor",
) -> Event:
    """Build a sensor reading event."""
    return Event(
        type=SENSOR_READING,
        source=source,
        equipment_id=equipment_id,
        payload={"sensor_type": sensor_type, "value": value},
        timestamp=timestamp or _utc_now(),
    )


class EventFilter:
    """
    Filter for event subscriptions.

    Allows subscribers to filter events by type and equipment.
    """

    def __init__(
        self,
        event_type: Optional[str] = None,
        equipment_id: Optional[int] = None,
    ):
        """
        Initialize an event filter.

        Args:
            event_type: Filter by event type (None = all types)
            equipment_id: Filter by equipment ID (None = all equipment)
        """
        self.event_type = event_type
        self.equipment_id = equipment_id

    def matches(self, event: Event) -> bool:
        """
        Check if an event matches this filter.

        Args:
            event: The event to check

        Returns:
            True if the event matches the filter
        """
        if self.event_type and event.type != self.event_type:
            return False
        if self.equipment_id is not None and event.equipment_id != self.equipment_id:
            return False
        return True

    def __repr__(self) -> str:
        return f"EventFilter(event_type={self.event_type!r}, equipment_id={self.equipment_id!r})"


EventHandler = Callable[[Event], None]


class EventBus:
    """
    Simple, synchronous event bus.

    Handlers are wrapped in try/except to prevent one bad subscriber from
    breaking delivery to the others.
    """

    def __init__(self) -> None:
        """Initialize the event bus."""
        self._handlers: List[tuple[EventFilter, EventHandler]] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        handler: EventHandler,
        event_filter: Optional[EventFilter] = None,
    ) -> None:
        """
        Subscribe to events.

        Args:
            handler: Callable that receives Event objects
            event_filter: Optional filter for events (None = receive all events)
        """
        if event_filter is None:
            event_filter = EventFilter()

        with self._lock:
            self._handlers.append((event_filter, handler))
        logger.debug(f"Subscribed handler {handler.__name__} with filter {event_filter}")

    def publish(self, event: Event) -> None:
        """
        Publish an event to all matching subscribers.

        Handlers are called synchronously and wrapped in try/except.

        Args:
            event: The event to publish
        """
        logger.debug(f"Publishing event: {event.type} from {event.source}")

        with self._lock:
            handlers = list(self._handlers)

        for event_filter, handler in handlers:
            if event_filter.matches(event):
                try:
                    handler(event)
                except Exception as e:
                    logger.error(
                        f"Error in event handler {handler.__name__} "
                        f"for event {event.type}: {e}",
                        exc_info=True,
                    )

    def unsubscribe(self, handler: EventHandler) -> None:
        """
        Unsubscribe a handler from all events.

        Args:
            handler: The handler to unsubscribe
        """
        with self._lock:
            self._handlers = [(f, h) for f, h in self._handlers if h != handler]
        logger.debug(f"Unsubscribed handler {handler.__name__}")

    @property
    def handler_count(self) -> int:
        with self._lock:
            return len(self._handlers)
