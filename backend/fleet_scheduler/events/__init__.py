from .booking_events import (
    BookingApproved,
    BookingCancelled,
    BookingCompleted,
    BookingRejected,
    BookingRequested,
    BookingStarted,
    RiderJoined,
    RiderLeft,
)
from .publisher import (
    Event,
    EventPublisher,
    LoggingEventPublisher,
    RecordingEventPublisher,
    serialize_event,
)

__all__ = [
    "BookingApproved",
    "BookingCancelled",
    "BookingCompleted",
    "BookingRejected",
    "BookingRequested",
    "BookingStarted",
    "Event",
    "EventPublisher",
    "LoggingEventPublisher",
    "RecordingEventPublisher",
    "RiderJoined",
    "RiderLeft",
    "serialize_event",
]
