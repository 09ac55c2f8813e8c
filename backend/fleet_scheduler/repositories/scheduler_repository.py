# backend/fleet_scheduler/repositories/scheduler_repository.py
"""
Scheduler Repository contract.

The scheduler never talks to storage directly. Every backend implements this
interface and is the durable owner of vehicle, booking and membership state;
the availability index is only a cache over it.

Failure contract:
- Unknown vehicles/bookings raise the matching NotFoundException subclass
- Backend failures raise StorageException (retryable)
- save_booking enforces optimistic versioning: saving a booking whose version
  no longer matches storage raises StorageException
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

from ..core.enums import BookingStatus
from ..domain.entities import Booking, SharedRideMembership, Vehicle


class SchedulerRepository(ABC):
    """Abstract persistence boundary for vehicles, bookings and memberships."""

    # Vehicles

    @abstractmethod
    def load_vehicle(self, vehicle_id: str) -> Vehicle:
        """
        Load a vehicle.

        Raises:
            VehicleNotFoundException: If the vehicle does not exist
        """

    @abstractmethod
    def list_vehicles(self) -> List[Vehicle]:
        """All vehicles, ordered by id."""

    @abstractmethod
    def save_vehicle(self, vehicle: Vehicle) -> Vehicle:
        """Insert or update a vehicle and return the stored copy."""

    # Bookings

    @abstractmethod
    def load_booking(self, booking_id: str) -> Booking:
        """
        Load a booking.

        Raises:
            BookingNotFoundException: If the booking does not exist
        """

    @abstractmethod
    def list_bookings_for_vehicle(
        self,
        vehicle_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> List[Booking]:
        """
        Bookings on a vehicle whose window intersects [start, end).

        Either bound may be omitted. Results are ordered by start time.
        """

    @abstractmethod
    def list_active_bookings(self) -> List[Booking]:
        """Every pending, approved or in-progress booking across the fleet."""

    @abstractmethod
    def save_booking(self, booking: Booking) -> Booking:
        """
        Insert (version 0) or update a booking.

        Returns:
            The stored copy, with its version incremented

        Raises:
            StorageException: On a stale version or backend failure
        """

    # Memberships

    @abstractmethod
    def load_membership(self, booking_id: str, rider_id: str) -> Optional[SharedRideMembership]:
        """The rider's membership on the booking, open or closed, if any."""

    @abstractmethod
    def list_memberships(
        self, booking_id: str, open_only: bool = True
    ) -> List[SharedRideMembership]:
        """Memberships on a booking ordered by join time."""

    @abstractmethod
    def save_membership(self, membership: SharedRideMembership) -> SharedRideMembership:
        """Insert or update a membership keyed by (booking_id, rider_id)."""

    # Units of work

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Make every write inside the block durable together, or not at all."""
        yield

    @abstractmethod
    def lock_vehicle(self, vehicle_id: str) -> None:
        """
        Take the storage-level lock on a vehicle for the current transaction.

        Backends shared by several processes must make this a real lock
        (row lock or equivalent); single-process backends may no-op.
        """
