# backend/fleet_scheduler/models/membership.py
"""Seats held by riders on shared bookings."""

from sqlalchemy import CheckConstraint, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from ..database import Base
from .types import UTCDateTime


class SharedRideMembershipRecord(Base):
    __tablename__ = "shared_ride_memberships"

    # Composite key enforces one membership per rider per booking
    booking_id = Column(String(26), ForeignKey("bookings.id"), primary_key=True)
    rider_id = Column(String(64), primary_key=True)
    seats = Column(Integer, nullable=False, default=1)
    joined_at = Column(UTCDateTime(), nullable=False)
    left_at = Column(UTCDateTime(), nullable=True)

    booking = relationship("BookingRecord", back_populates="memberships")

    __table_args__ = (CheckConstraint("seats >= 1", name="ck_memberships_seats_positive"),)
