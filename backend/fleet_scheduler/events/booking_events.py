"""Booking domain events."""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class BookingRequested:
    """Fired after a booking is admitted and stored as pending."""

    booking_id: str
    vehicle_id: str
    requester_id: str
    mode: str
    start_time: datetime
    end_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingApproved:
    booking_id: str
    vehicle_id: str
    approver_id: str
    approved_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingRejected:
    booking_id: str
    vehicle_id: str
    approver_id: str
    rejected_at: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingCancelled:
    """Fired after a booking is cancelled."""

    booking_id: str
    vehicle_id: str
    cancelled_by: str
    cancelled_at: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingStarted:
    booking_id: str
    vehicle_id: str
    started_by: str
    started_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingCompleted:
    """Fired after a trip ends."""

    booking_id: str
    vehicle_id: str
    completed_at: datetime
    distance: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RiderJoined:
    booking_id: str
    rider_id: str
    seats: int
    occupancy: int
    joined_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RiderLeft:
    booking_id: str
    rider_id: str
    seats: int
    occupancy: int
    left_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
