# backend/fleet_scheduler/models/booking.py
"""
Booking table.

Bookings store their own half-open [start_time, end_time) window in UTC and
the requested mode. `version` backs the optimistic concurrency check in the
SQL repository.
"""

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import UTCDateTime


class BookingRecord(Base):
    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    vehicle_id = Column(String(26), ForeignKey("vehicles.id"), nullable=False)
    requester_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(String(64), nullable=True)
    approver_id = Column(String(64), nullable=True)

    start_time = Column(UTCDateTime(), nullable=False)
    end_time = Column(UTCDateTime(), nullable=False)
    mode = Column(String(16), nullable=False, default="exclusive")
    occupancy = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="pending", index=True)
    purpose = Column(Text, nullable=False, default="")
    destination = Column(Text, nullable=True)

    # Lifecycle bookkeeping
    cancelled_by_id = Column(String(64), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    start_odometer = Column(Integer, nullable=True)
    end_odometer = Column(Integer, nullable=True)
    created_at = Column(UTCDateTime(), nullable=True)
    approved_at = Column(UTCDateTime(), nullable=True)
    rejected_at = Column(UTCDateTime(), nullable=True)
    started_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)
    cancelled_at = Column(UTCDateTime(), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    vehicle = relationship("VehicleRecord", back_populates="bookings")
    memberships = relationship(
        "SharedRideMembershipRecord", back_populates="booking", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'in_progress', 'completed', 'rejected', 'cancelled')",
            name="ck_bookings_status",
        ),
        CheckConstraint("mode IN ('exclusive', 'shared')", name="ck_bookings_mode"),
        CheckConstraint("occupancy >= 1", name="ck_bookings_occupancy_positive"),
        CheckConstraint("start_time < end_time", name="ck_bookings_time_order"),
    )

    def __repr__(self) -> str:
        return (
            f"<BookingRecord {self.id}: vehicle={self.vehicle_id}, "
            f"window={self.start_time}-{self.end_time}, status={self.status}>"
        )


Index(
    "ix_bookings_vehicle_window",
    BookingRecord.vehicle_id,
    BookingRecord.start_time,
    BookingRecord.end_time,
)
