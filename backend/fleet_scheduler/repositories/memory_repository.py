# backend/fleet_scheduler/repositories/memory_repository.py
"""
In-memory Scheduler Repository.

Used by tests and single-process deployments. Writes made inside
transaction() are staged per thread and applied together on exit, so a
failure part-way through a mutation leaves the store untouched. Every read
returns a copy; callers must save to make changes durable.
"""

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
import logging
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from ..core.enums import ACTIVE_BOOKING_STATUSES, BookingStatus
from ..core.exceptions import (
    BookingNotFoundException,
    StorageException,
    VehicleNotFoundException,
)
from ..domain.entities import Booking, SharedRideMembership, Vehicle
from .scheduler_repository import SchedulerRepository

logger = logging.getLogger(__name__)

MembershipKey = Tuple[str, str]


class _StagedWrites:
    def __init__(self) -> None:
        self.vehicles: Dict[str, Vehicle] = {}
        self.bookings: Dict[str, Booking] = {}
        self.memberships: Dict[MembershipKey, SharedRideMembership] = {}


class InMemorySchedulerRepository(SchedulerRepository):
    def __init__(self) -> None:
        self._vehicles: Dict[str, Vehicle] = {}
        self._bookings: Dict[str, Booking] = {}
        self._memberships: Dict[MembershipKey, SharedRideMembership] = {}
        self._store_lock = threading.RLock()
        self._local = threading.local()

    # Transaction plumbing

    def _staged(self) -> Optional[_StagedWrites]:
        stack = getattr(self._local, "stack", None)
        return stack[-1] if stack else None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = self._local.stack = []
        if stack:
            # Nested blocks join the outer unit of work
            yield
            return

        staged = _StagedWrites()
        stack.append(staged)
        try:
            yield
        except Exception:
            logger.debug("Discarding %d staged booking writes", len(staged.bookings))
            raise
        else:
            self._commit(staged)
        finally:
            stack.pop()

    def _commit(self, staged: _StagedWrites) -> None:
        with self._store_lock:
            for booking in staged.bookings.values():
                current = self._bookings.get(booking.id)
                if current is not None and current.version >= booking.version:
                    raise StorageException(
                        f"Booking {booking.id} was modified concurrently",
                        details={"booking_id": booking.id, "version": booking.version},
                    )
            self._vehicles.update(staged.vehicles)
            self._bookings.update(staged.bookings)
            self._memberships.update(staged.memberships)

    def lock_vehicle(self, vehicle_id: str) -> None:
        # Single process: VehicleLockManager already serializes the vehicle
        self.load_vehicle(vehicle_id)

    # Vehicles

    def load_vehicle(self, vehicle_id: str) -> Vehicle:
        staged = self._staged()
        if staged and vehicle_id in staged.vehicles:
            return replace(staged.vehicles[vehicle_id])
        with self._store_lock:
            vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundException(vehicle_id)
        return replace(vehicle)

    def list_vehicles(self) -> List[Vehicle]:
        with self._store_lock:
            merged = dict(self._vehicles)
        staged = self._staged()
        if staged:
            merged.update(staged.vehicles)
        return [replace(merged[key]) for key in sorted(merged)]

    def save_vehicle(self, vehicle: Vehicle) -> Vehicle:
        stored = replace(vehicle)
        staged = self._staged()
        if staged is not None:
            staged.vehicles[stored.id] = stored
        else:
            with self._store_lock:
                self._vehicles[stored.id] = stored
        return replace(stored)

    # Bookings

    def _current_booking(self, booking_id: str) -> Optional[Booking]:
        staged = self._staged()
        if staged and booking_id in staged.bookings:
            return staged.bookings[booking_id]
        with self._store_lock:
            return self._bookings.get(booking_id)

    def load_booking(self, booking_id: str) -> Booking:
        booking = self._current_booking(booking_id)
        if booking is None:
            raise BookingNotFoundException(booking_id)
        return replace(booking)

    def _merged_bookings(self) -> List[Booking]:
        with self._store_lock:
            merged = dict(self._bookings)
        staged = self._staged()
        if staged:
            merged.update(staged.bookings)
        return list(merged.values())

    def list_bookings_for_vehicle(
        self,
        vehicle_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> List[Booking]:
        wanted = set(statuses) if statuses is not None else None
        matches = [
            replace(booking)
            for booking in self._merged_bookings()
            if booking.vehicle_id == vehicle_id
            and (start is None or booking.end_time > start)
            and (end is None or booking.start_time < end)
            and (wanted is None or booking.status in wanted)
        ]
        matches.sort(key=lambda b: (b.start_time, b.id))
        return matches

    def list_active_bookings(self) -> List[Booking]:
        active = [
            replace(booking)
            for booking in self._merged_bookings()
            if booking.status in ACTIVE_BOOKING_STATUSES
        ]
        active.sort(key=lambda b: (b.vehicle_id, b.start_time, b.id))
        return active

    def save_booking(self, booking: Booking) -> Booking:
        current = self._current_booking(booking.id)
        if current is None and booking.version != 0:
            raise StorageException(
                f"Booking {booking.id} does not exist and cannot be updated",
                details={"booking_id": booking.id},
            )
        if current is not None and current.version != booking.version:
            raise StorageException(
                f"Booking {booking.id} was modified concurrently",
                details={"booking_id": booking.id, "version": booking.version},
            )

        stored = replace(booking, version=booking.version + 1)
        staged = self._staged()
        if staged is not None:
            staged.bookings[stored.id] = stored
        else:
            with self._store_lock:
                self._bookings[stored.id] = stored
        return replace(stored)

    # Memberships

    def load_membership(self, booking_id: str, rider_id: str) -> Optional[SharedRideMembership]:
        key = (booking_id, rider_id)
        staged = self._staged()
        if staged and key in staged.memberships:
            return replace(staged.memberships[key])
        with self._store_lock:
            membership = self._memberships.get(key)
        return replace(membership) if membership else None

    def list_memberships(
        self, booking_id: str, open_only: bool = True
    ) -> List[SharedRideMembership]:
        with self._store_lock:
            merged = dict(self._memberships)
        staged = self._staged()
        if staged:
            merged.update(staged.memberships)
        found = [
            replace(membership)
            for (owner, _), membership in merged.items()
            if owner == booking_id and (membership.is_open or not open_only)
        ]
        found.sort(key=lambda m: (m.joined_at, m.rider_id))
        return found

    def save_membership(self, membership: SharedRideMembership) -> SharedRideMembership:
        stored = replace(membership)
        staged = self._staged()
        if staged is not None:
            staged.memberships[stored.key] = stored
        else:
            with self._store_lock:
                self._memberships[stored.key] = stored
        return replace(stored)
