# backend/fleet_scheduler/services/conflict_checker.py
"""
Conflict Checker Service for the fleet reservation scheduler.

Decides whether a candidate booking can be admitted on a vehicle:
- Any overlap with an exclusive booking is an ExclusiveConflict
- An exclusive candidate may not overlap anything at all
- Shared bookings may overlap while summed occupancy stays within capacity

All windows are half-open [start, end): a booking ending at 10:00 does not
overlap one starting at 10:00.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from ..core.enums import ACTIVE_BOOKING_STATUSES, BookingMode, BookingStatus, ErrorKind
from ..core.exceptions import CapacityExceededException, ExclusiveConflictException
from ..domain.entities import Vehicle
from ..monitoring.prometheus_metrics import prometheus_metrics
from .availability_index import AvailabilityIndex, IntervalEntry
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of an admission check. `reason` is None when admitted."""

    admitted: bool
    reason: Optional[ErrorKind] = None
    conflicting_booking_ids: Tuple[str, ...] = field(default_factory=tuple)
    peak_occupancy: int = 0
    capacity: int = 0

    def raise_for_rejection(self) -> None:
        """Raise the typed exception for a rejected decision; no-op if admitted."""
        if self.admitted:
            return
        if self.reason == ErrorKind.CAPACITY_EXCEEDED:
            raise CapacityExceededException(
                self.capacity,
                self.peak_occupancy,
                conflicting_booking_ids=list(self.conflicting_booking_ids),
            )
        raise ExclusiveConflictException(
            details={"conflicting_booking_ids": list(self.conflicting_booking_ids)}
        )


def peak_occupancy(entries: Iterable[IntervalEntry], start: datetime, end: datetime) -> int:
    """
    Highest summed occupancy of the entries at any instant in [start, end).

    Sweep over boundaries clipped to the window. At equal instants ends are
    processed before starts, which is what makes touching windows disjoint.
    """
    events: List[Tuple[datetime, int]] = []
    for entry in entries:
        clipped_start = max(entry.start, start)
        clipped_end = min(entry.end, end)
        if clipped_start >= clipped_end:
            continue
        events.append((clipped_start, entry.occupancy))
        events.append((clipped_end, -entry.occupancy))

    events.sort(key=lambda event: (event[0], event[1]))
    running = peak = 0
    for _, delta in events:
        running += delta
        peak = max(peak, running)
    return peak


def evaluate_admission(
    capacity: int,
    entries: Sequence[IntervalEntry],
    start: datetime,
    end: datetime,
    mode: BookingMode,
    occupancy: int,
) -> AdmissionDecision:
    """
    Pure admission decision over already-fetched entries.

    Args:
        capacity: Vehicle capacity
        entries: Existing claims on the vehicle (need not be pre-filtered)
        start: Candidate start
        end: Candidate end
        mode: Candidate booking mode
        occupancy: Seats the candidate needs

    Returns:
        AdmissionDecision
    """
    mode = BookingMode(mode)
    overlapping = [entry for entry in entries if entry.overlaps(start, end)]

    exclusive_hits = tuple(entry.booking_id for entry in overlapping if entry.is_exclusive)
    if exclusive_hits:
        return AdmissionDecision(
            admitted=False,
            reason=ErrorKind.EXCLUSIVE_CONFLICT,
            conflicting_booking_ids=exclusive_hits,
            capacity=capacity,
        )

    if mode == BookingMode.EXCLUSIVE and overlapping:
        return AdmissionDecision(
            admitted=False,
            reason=ErrorKind.EXCLUSIVE_CONFLICT,
            conflicting_booking_ids=tuple(entry.booking_id for entry in overlapping),
            capacity=capacity,
        )

    if occupancy > capacity:
        return AdmissionDecision(
            admitted=False,
            reason=ErrorKind.CAPACITY_EXCEEDED,
            peak_occupancy=occupancy,
            capacity=capacity,
        )

    peak = peak_occupancy(overlapping, start, end) + occupancy
    if peak > capacity:
        return AdmissionDecision(
            admitted=False,
            reason=ErrorKind.CAPACITY_EXCEEDED,
            conflicting_booking_ids=tuple(entry.booking_id for entry in overlapping),
            peak_occupancy=peak,
            capacity=capacity,
        )

    return AdmissionDecision(admitted=True, peak_occupancy=peak, capacity=capacity)


class ConflictChecker(BaseService):
    """
    Service for checking booking conflicts on a vehicle.

    Fetches claims from the availability index and delegates the decision to
    evaluate_admission. Callers hold the vehicle lock, so the decision stays
    valid until they commit.
    """

    def __init__(self, index: AvailabilityIndex):
        """
        Initialize conflict checker service.

        Args:
            index: Availability index the claims are read from
        """
        super().__init__(index.repository)
        self.logger = logging.getLogger(__name__)
        self.index = index

    @BaseService.measure_operation("check_admission")
    def check(
        self,
        vehicle: Vehicle,
        start: datetime,
        end: datetime,
        mode: BookingMode,
        occupancy: int,
        *,
        statuses: Iterable[BookingStatus] = ACTIVE_BOOKING_STATUSES,
        exclude_booking_id: Optional[str] = None,
    ) -> AdmissionDecision:
        """
        Decide whether a candidate booking fits on the vehicle.

        Args:
            vehicle: Vehicle being booked
            start: Candidate start
            end: Candidate end
            mode: Exclusive or shared
            occupancy: Seats the candidate needs
            statuses: Which existing bookings count as claims
            exclude_booking_id: The candidate itself when re-checking a booking

        Returns:
            AdmissionDecision
        """
        mode = BookingMode(mode)
        entries = self.index.intervals_for(
            vehicle.id,
            start,
            end,
            statuses=statuses,
            exclude_booking_id=exclude_booking_id,
        )
        decision = evaluate_admission(vehicle.capacity, entries, start, end, mode, occupancy)

        prometheus_metrics.record_admission(
            mode.value, "admitted" if decision.admitted else decision.reason.value
        )
        if not decision.admitted:
            self.logger.warning(
                f"Admission rejected on vehicle {vehicle.id} for {start.isoformat()}-"
                f"{end.isoformat()}: {decision.reason.value}",
                extra={
                    "vehicle_id": vehicle.id,
                    "conflicting_booking_ids": list(decision.conflicting_booking_ids),
                    "peak_occupancy": decision.peak_occupancy,
                },
            )
        return decision

    def has_conflict(
        self,
        vehicle: Vehicle,
        start: datetime,
        end: datetime,
        mode: BookingMode = BookingMode.EXCLUSIVE,
        occupancy: int = 1,
    ) -> bool:
        """Simplified boolean check for quick validation."""
        return not self.check(vehicle, start, end, mode, occupancy).admitted
