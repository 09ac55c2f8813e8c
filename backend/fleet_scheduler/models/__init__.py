"""
Database models for the fleet reservation scheduler.

- VehicleRecord: vehicles and their administrative status flag
- BookingRecord: reservations with their lifecycle bookkeeping
- SharedRideMembershipRecord: rider seats on shared bookings
"""

from .booking import BookingRecord
from .membership import SharedRideMembershipRecord
from .vehicle import VehicleRecord

__all__ = ["BookingRecord", "SharedRideMembershipRecord", "VehicleRecord"]
