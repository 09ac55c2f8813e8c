"""Event publishers - hand domain events to whatever notifies people."""
from datetime import datetime
import logging
import threading
from typing import Any, Dict, List, Protocol

logger = logging.getLogger(__name__)


class Event(Protocol):
    """Protocol for event types."""

    def to_dict(self) -> Dict[str, Any]:
        ...


def serialize_event(event: Event) -> Dict[str, Any]:
    """Event payload with datetimes converted to ISO strings."""
    payload = event.to_dict()
    for key, value in payload.items():
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
    return {"type": type(event).__name__, "payload": payload}


class EventPublisher(Protocol):
    def publish(self, event: Event) -> None:
        ...


class LoggingEventPublisher:
    """
    Default publisher: writes each event to the log.

    Deployments swap in a publisher that emails approvers and requesters.
    """

    def publish(self, event: Event) -> None:
        message = serialize_event(event)
        logger.info("event:%s", message["type"], extra={"event": message["payload"]})


class RecordingEventPublisher:
    """Keeps published events in memory, in publish order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[Event] = []

    def publish(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: type) -> List[Event]:
        with self._lock:
            return [event for event in self.events if isinstance(event, event_type)]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
