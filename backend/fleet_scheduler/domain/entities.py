"""
Scheduler entities.

Plain dataclasses shared by every repository backend. The scheduler owns all
writes to Booking and SharedRideMembership; repositories hand out copies, so a
change is only durable once it has been saved.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.enums import (
    ACTIVE_BOOKING_STATUSES,
    TERMINAL_BOOKING_STATUSES,
    BookingMode,
    BookingStatus,
    VehicleStatus,
)
from ..core.ulid_helper import generate_ulid


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Vehicle:
    """A bookable vehicle. `status` holds the administrative flag only."""

    capacity: int
    id: str = field(default_factory=generate_ulid)
    status: VehicleStatus = VehicleStatus.AVAILABLE
    make: str = ""
    model: str = ""
    license_plate: str = ""
    current_mileage: int = 0

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("Vehicle capacity must be at least 1")
        self.status = VehicleStatus(self.status)

    @property
    def is_bookable(self) -> bool:
        return self.status not in (VehicleStatus.MAINTENANCE, VehicleStatus.UNAVAILABLE)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class Booking:
    """A reservation of one vehicle for a half-open [start_time, end_time) window."""

    vehicle_id: str
    requester_id: str
    start_time: datetime
    end_time: datetime
    mode: BookingMode = BookingMode.EXCLUSIVE
    occupancy: int = 1
    purpose: str = ""
    id: str = field(default_factory=generate_ulid)
    status: BookingStatus = BookingStatus.PENDING
    destination: Optional[str] = None
    driver_id: Optional[str] = None
    approver_id: Optional[str] = None
    cancelled_by_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    start_odometer: Optional[int] = None
    end_odometer: Optional[int] = None
    created_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    # Bumped by the repository on every save
    version: int = 0

    def __post_init__(self) -> None:
        self.mode = BookingMode(self.mode)
        self.status = BookingStatus(self.status)

    @property
    def is_shared(self) -> bool:
        return self.mode == BookingMode.SHARED

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BOOKING_STATUSES

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap: touching endpoints do not overlap."""
        return self.start_time < end and start < self.end_time

    def covers(self, instant: datetime) -> bool:
        return self.start_time <= instant < self.end_time

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["status"] = self.status.value
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = _iso(value)
        return data

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: vehicle={self.vehicle_id}, mode={self.mode.value}, "
            f"window={_iso(self.start_time)}-{_iso(self.end_time)}, "
            f"occupancy={self.occupancy}, status={self.status.value}>"
        )


@dataclass
class SharedRideMembership:
    """A rider's seat on a shared booking. Unique per (booking_id, rider_id)."""

    booking_id: str
    rider_id: str
    joined_at: datetime
    seats: int = 1
    left_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.left_at is None

    @property
    def key(self) -> tuple[str, str]:
        return (self.booking_id, self.rider_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "rider_id": self.rider_id,
            "seats": self.seats,
            "joined_at": _iso(self.joined_at),
            "left_at": _iso(self.left_at),
        }
