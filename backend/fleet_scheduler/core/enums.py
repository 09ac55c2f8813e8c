# backend/fleet_scheduler/core/enums.py
"""
Core enums for the fleet reservation scheduler.

String-valued so they persist and serialize without conversion.
"""

from enum import Enum


class VehicleStatus(str, Enum):
    """
    Vehicle availability status.

    AVAILABLE, MAINTENANCE and UNAVAILABLE are administrative flags stored on
    the vehicle. IN_USE is never stored; it is derived from active bookings.
    """

    AVAILABLE = "available"
    IN_USE = "in_use"
    MAINTENANCE = "maintenance"
    UNAVAILABLE = "unavailable"


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class BookingMode(str, Enum):
    """How a booking consumes vehicle capacity."""

    EXCLUSIVE = "exclusive"
    SHARED = "shared"


class BookingEvent(str, Enum):
    """Lifecycle events accepted by the booking state machine."""

    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    START = "start"
    END = "end"
    JOIN = "join"
    LEAVE = "leave"


class Capability(str, Enum):
    """
    Capability tags an actor can present.

    Admins hold every capability; see Actor.admin().
    """

    REQUEST_BOOKINGS = "request_bookings"
    APPROVE_BOOKINGS = "approve_bookings"
    CANCEL_ANY_BOOKING = "cancel_any_booking"
    OPERATE_VEHICLES = "operate_vehicles"
    JOIN_SHARED_RIDES = "join_shared_rides"
    MANAGE_VEHICLES = "manage_vehicles"


class ErrorKind(str, Enum):
    """Failure kinds reported to callers of the scheduler."""

    INVALID_INTERVAL = "INVALID_INTERVAL"
    VEHICLE_UNAVAILABLE = "VEHICLE_UNAVAILABLE"
    EXCLUSIVE_CONFLICT = "EXCLUSIVE_CONFLICT"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    STORAGE_ERROR = "STORAGE_ERROR"


# Statuses that hold capacity on a vehicle.
ACTIVE_BOOKING_STATUSES = frozenset(
    {BookingStatus.PENDING, BookingStatus.APPROVED, BookingStatus.IN_PROGRESS}
)
# Statuses that count as committed when an approval re-checks conflicts.
COMMITTED_BOOKING_STATUSES = frozenset({BookingStatus.APPROVED, BookingStatus.IN_PROGRESS})
TERMINAL_BOOKING_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.REJECTED, BookingStatus.CANCELLED}
)
