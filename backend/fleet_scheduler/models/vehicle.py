# backend/fleet_scheduler/models/vehicle.py
"""
Vehicle table.

Only the administrative status flag is stored; whether a vehicle is in use is
derived from its bookings at query time.
"""

from sqlalchemy import CheckConstraint, Column, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base
from .types import UTCDateTime


class VehicleRecord(Base):
    __tablename__ = "vehicles"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    make = Column(String(100), nullable=False, default="")
    model = Column(String(100), nullable=False, default="")
    license_plate = Column(String(32), nullable=False, default="")
    capacity = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="available", index=True)
    current_mileage = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime(), server_default=func.now())

    bookings = relationship("BookingRecord", back_populates="vehicle")

    __table_args__ = (
        CheckConstraint("capacity >= 1", name="ck_vehicles_capacity_positive"),
        CheckConstraint(
            "status IN ('available', 'maintenance', 'unavailable')",
            name="ck_vehicles_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<VehicleRecord {self.id}: plate={self.license_plate}, capacity={self.capacity}>"
