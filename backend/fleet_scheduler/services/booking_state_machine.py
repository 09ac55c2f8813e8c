# backend/fleet_scheduler/services/booking_state_machine.py
"""
Booking lifecycle rules.

pending -> approved -> in_progress -> completed, with pending -> rejected and
{pending, approved} -> cancelled. Terminal bookings never move again. Seat
events (join/leave) keep the status unchanged.
"""

from datetime import datetime, timedelta
import logging
from typing import Dict, Optional, Tuple

from ..core.config import Settings, settings as default_settings
from ..core.enums import BookingEvent, BookingStatus, Capability
from ..core.exceptions import InvalidTransitionException, UnauthorizedActionException
from ..domain.actors import Actor
from ..domain.entities import Booking

logger = logging.getLogger(__name__)

_TRANSITIONS: Dict[Tuple[BookingStatus, BookingEvent], BookingStatus] = {
    (BookingStatus.PENDING, BookingEvent.APPROVE): BookingStatus.APPROVED,
    (BookingStatus.PENDING, BookingEvent.REJECT): BookingStatus.REJECTED,
    (BookingStatus.PENDING, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.APPROVED, BookingEvent.START): BookingStatus.IN_PROGRESS,
    (BookingStatus.APPROVED, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.IN_PROGRESS, BookingEvent.END): BookingStatus.COMPLETED,
}

# Capability an actor needs for each event when it is not one of the
# booking's own parties
_REQUIRED_CAPABILITY: Dict[BookingEvent, Capability] = {
    BookingEvent.APPROVE: Capability.APPROVE_BOOKINGS,
    BookingEvent.REJECT: Capability.APPROVE_BOOKINGS,
    BookingEvent.CANCEL: Capability.CANCEL_ANY_BOOKING,
    BookingEvent.START: Capability.OPERATE_VEHICLES,
    BookingEvent.END: Capability.OPERATE_VEHICLES,
    BookingEvent.JOIN: Capability.JOIN_SHARED_RIDES,
    BookingEvent.LEAVE: Capability.CANCEL_ANY_BOOKING,
}


class BookingStateMachine:
    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings

    @staticmethod
    def next_status(status: BookingStatus, event: BookingEvent) -> BookingStatus:
        """
        Status a booking moves to when `event` is applied.

        Raises:
            InvalidTransitionException: If the table has no such transition
        """
        status = BookingStatus(status)
        event = BookingEvent(event)
        target = _TRANSITIONS.get((status, event))
        if target is None:
            raise InvalidTransitionException(
                f"Cannot {event.value} a booking that is {status.value}",
                from_status=status.value,
                event=event.value,
            )
        return target

    @staticmethod
    def can_transition(status: BookingStatus, event: BookingEvent) -> bool:
        return (BookingStatus(status), BookingEvent(event)) in _TRANSITIONS

    @staticmethod
    def authorize(
        event: BookingEvent,
        booking: Booking,
        actor: Actor,
        subject_id: Optional[str] = None,
    ) -> None:
        """
        Check the actor may trigger `event` on the booking.

        Parties to a booking act on it without extra grants: the requester may
        cancel, the requester or assigned driver may start and end, and a
        rider may leave their own seat (`subject_id`).

        Raises:
            UnauthorizedActionException
        """
        event = BookingEvent(event)
        required = _REQUIRED_CAPABILITY[event]

        if event == BookingEvent.CANCEL and actor.id == booking.requester_id:
            return
        if event in (BookingEvent.START, BookingEvent.END) and actor.id in (
            booking.requester_id,
            booking.driver_id,
        ):
            return
        if event == BookingEvent.LEAVE and subject_id is not None and actor.id == subject_id:
            return
        if actor.has(required):
            return

        logger.warning(
            "Unauthorized booking action",
            extra={"actor_id": actor.id, "booking_id": booking.id, "event": event.value},
        )
        raise UnauthorizedActionException(
            actor.id, f"{event.value} booking {booking.id}", required.value
        )

    def ensure_startable(self, booking: Booking, now: datetime) -> None:
        """
        The start guard: a trip may begin at most `start_grace_minutes` early.

        Raises:
            InvalidTransitionException: With reason "too_early"
        """
        earliest = booking.start_time - timedelta(minutes=self.settings.start_grace_minutes)
        if now < earliest:
            raise InvalidTransitionException(
                f"Booking {booking.id} cannot start before {earliest.isoformat()}",
                from_status=booking.status.value,
                event=BookingEvent.START.value,
                reason="too_early",
                earliest_start=earliest.isoformat(),
            )

    @staticmethod
    def ensure_seat_event(booking: Booking, event: BookingEvent) -> None:
        """
        Guard for join/leave, which never change the booking status.

        join needs a shared booking that is approved or in progress; leave
        needs any non-terminal shared booking.

        Raises:
            InvalidTransitionException
        """
        event = BookingEvent(event)
        if not booking.is_shared:
            raise InvalidTransitionException(
                f"Cannot {event.value} booking {booking.id}: it is not a shared ride",
                from_status=booking.status.value,
                event=event.value,
                reason="not_shared",
            )
        if event == BookingEvent.JOIN:
            allowed = booking.status in (BookingStatus.APPROVED, BookingStatus.IN_PROGRESS)
        else:
            allowed = not booking.is_terminal
        if not allowed:
            raise InvalidTransitionException(
                f"Cannot {event.value} a booking that is {booking.status.value}",
                from_status=booking.status.value,
                event=event.value,
            )
