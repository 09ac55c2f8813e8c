# backend/fleet_scheduler/services/availability_index.py
"""
Availability Index.

Per-process cache answering "which bookings already claim vehicle V during
[from, to)?". The repository stays the source of truth: the index is rebuilt
from it on start, updated after each committed mutation and dropped per
vehicle whenever a write could not be confirmed. A dropped vehicle is
reloaded from the repository on its next lookup.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
import logging
import threading
from typing import Dict, Iterable, List, Optional, Set

from ..core.enums import ACTIVE_BOOKING_STATUSES, BookingMode, BookingStatus
from ..domain.entities import Booking
from ..repositories.scheduler_repository import SchedulerRepository

logger = logging.getLogger(__name__)

# Reloads racing with concurrent apply() calls are retried this many times
_MAX_REFRESH_ATTEMPTS = 3


@dataclass(frozen=True)
class IntervalEntry:
    """One booking's claim on a vehicle."""

    booking_id: str
    start: datetime
    end: datetime
    mode: BookingMode
    occupancy: int
    status: BookingStatus

    @classmethod
    def from_booking(cls, booking: Booking) -> "IntervalEntry":
        return cls(
            booking_id=booking.id,
            start=booking.start_time,
            end=booking.end_time,
            mode=booking.mode,
            occupancy=booking.occupancy,
            status=booking.status,
        )

    @property
    def is_exclusive(self) -> bool:
        return self.mode == BookingMode.EXCLUSIVE

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


class AvailabilityIndex:
    """Vehicle id -> active interval entries, loaded lazily per vehicle."""

    def __init__(self, repository: SchedulerRepository):
        self.repository = repository
        self._guard = threading.RLock()
        self._entries: Dict[str, Dict[str, IntervalEntry]] = {}
        self._known: Set[str] = set()
        self._generation: Dict[str, int] = defaultdict(int)
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def rebuild(self) -> None:
        """Replace the whole index with the repository's active bookings."""
        vehicles = self.repository.list_vehicles()
        bookings = self.repository.list_active_bookings()

        entries: Dict[str, Dict[str, IntervalEntry]] = {vehicle.id: {} for vehicle in vehicles}
        for booking in bookings:
            entries.setdefault(booking.vehicle_id, {})[booking.id] = IntervalEntry.from_booking(
                booking
            )

        with self._guard:
            for vehicle_id in set(self._entries) | set(entries):
                self._generation[vehicle_id] += 1
            self._entries = entries
            self._known = set(entries)
            self._loaded = True

        logger.info(
            "Availability index rebuilt",
            extra={"vehicles": len(entries), "active_bookings": len(bookings)},
        )

    def refresh_vehicle(self, vehicle_id: str) -> List[IntervalEntry]:
        """
        Reload one vehicle's entries from the repository.

        Returns the entries read, whether or not they could be cached.
        """
        entries: List[IntervalEntry] = []
        for _ in range(_MAX_REFRESH_ATTEMPTS):
            with self._guard:
                generation = self._generation[vehicle_id]

            bookings = self.repository.list_bookings_for_vehicle(
                vehicle_id, statuses=ACTIVE_BOOKING_STATUSES
            )
            entries = [IntervalEntry.from_booking(booking) for booking in bookings]

            with self._guard:
                if self._generation[vehicle_id] != generation:
                    # An apply/invalidate landed while we were reading
                    continue
                self._entries[vehicle_id] = {entry.booking_id: entry for entry in entries}
                self._known.add(vehicle_id)
                self._generation[vehicle_id] += 1
                return entries

        # Still racing: leave the vehicle unknown so the next lookup reloads it
        logger.warning("Availability refresh kept racing", extra={"vehicle_id": vehicle_id})
        self.invalidate(vehicle_id)
        return entries

    def apply(self, booking: Booking) -> None:
        """Reflect a committed booking: upsert while active, drop otherwise."""
        with self._guard:
            self._generation[booking.vehicle_id] += 1
            if booking.vehicle_id not in self._known:
                return
            vehicle_entries = self._entries.setdefault(booking.vehicle_id, {})
            if booking.status in ACTIVE_BOOKING_STATUSES:
                vehicle_entries[booking.id] = IntervalEntry.from_booking(booking)
            else:
                vehicle_entries.pop(booking.id, None)

    def invalidate(self, vehicle_id: str) -> None:
        with self._guard:
            self._generation[vehicle_id] += 1
            self._known.discard(vehicle_id)
            self._entries.pop(vehicle_id, None)
        logger.debug("Availability entries invalidated", extra={"vehicle_id": vehicle_id})

    def is_known(self, vehicle_id: str) -> bool:
        with self._guard:
            return vehicle_id in self._known

    def intervals_for(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        statuses: Optional[Iterable[BookingStatus]] = None,
        exclude_booking_id: Optional[str] = None,
    ) -> List[IntervalEntry]:
        """
        Entries on the vehicle intersecting [start, end), ordered by start.

        Args:
            vehicle_id: Vehicle to inspect
            start: Window start (inclusive)
            end: Window end (exclusive)
            statuses: Restrict to these booking statuses (default: all active)
            exclude_booking_id: Leave this booking out (re-checks of itself)

        Raises:
            StorageException: If the vehicle had to be reloaded and the
                repository failed
        """
        wanted = set(statuses) if statuses is not None else ACTIVE_BOOKING_STATUSES
        with self._guard:
            cached = self._entries.get(vehicle_id) if vehicle_id in self._known else None
            candidates = list(cached.values()) if cached is not None else None
        if candidates is None:
            candidates = self.refresh_vehicle(vehicle_id)

        matches = [
            entry
            for entry in candidates
            if entry.status in wanted
            and entry.booking_id != exclude_booking_id
            and entry.overlaps(start, end)
        ]
        matches.sort(key=lambda entry: (entry.start, entry.end, entry.booking_id))
        return matches
