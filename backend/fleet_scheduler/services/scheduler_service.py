# backend/fleet_scheduler/services/scheduler_service.py
"""
Scheduler Service for the fleet reservation scheduler.

Orchestrates booking admission and the booking lifecycle:
- request/approve/reject/cancel/start/end of vehicle bookings
- riders joining and leaving shared rides
- derived vehicle status and availability lookups

Every mutation on a vehicle runs as:
    vehicle lock -> repository transaction -> storage row lock
    -> optional index reload -> work
    -> commit -> availability index update -> lock release -> events
so check-then-commit is atomic per vehicle while distinct vehicles proceed in
parallel. The effective order of admissions on one vehicle is the order in
which operations obtain its lock.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
import logging
from typing import Iterable, Iterator, List, Optional, Tuple

from ..core.clock import Clock, SystemClock, ensure_utc
from ..core.config import Settings, settings as default_settings
from ..core.enums import (
    COMMITTED_BOOKING_STATUSES,
    BookingEvent,
    BookingMode,
    BookingStatus,
    Capability,
    VehicleStatus,
)
from ..core.exceptions import (
    DomainException,
    InvalidIntervalException,
    InvalidTransitionException,
    MembershipNotFoundException,
    StorageException,
    UnauthorizedActionException,
    ValidationException,
    VehicleUnavailableException,
)
from ..core.vehicle_lock import VehicleLockManager
from ..domain.actors import Actor
from ..domain.entities import Booking, SharedRideMembership, Vehicle
from ..events import (
    BookingApproved,
    BookingCancelled,
    BookingCompleted,
    BookingRejected,
    BookingRequested,
    BookingStarted,
    Event,
    EventPublisher,
    LoggingEventPublisher,
    RiderJoined,
    RiderLeft,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.scheduler_repository import SchedulerRepository
from .availability_index import AvailabilityIndex
from .base import BaseService
from .booking_state_machine import BookingStateMachine
from .conflict_checker import ConflictChecker, evaluate_admission

logger = logging.getLogger(__name__)


class _Mutation:
    """What one locked unit of work changed, applied once it has committed."""

    def __init__(self) -> None:
        self.bookings: List[Booking] = []
        self.events: List[Event] = []
        self.transitions: List[Tuple[BookingEvent, BookingStatus]] = []

    def record(self, booking: Booking) -> Booking:
        self.bookings.append(booking)
        return booking


class SchedulerService(BaseService):
    """
    Service handling vehicle bookings and shared rides.

    The sole writer of Booking and SharedRideMembership records.
    """

    def __init__(
        self,
        repository: SchedulerRepository,
        index: Optional[AvailabilityIndex] = None,
        lock_manager: Optional[VehicleLockManager] = None,
        clock: Optional[Clock] = None,
        publisher: Optional[EventPublisher] = None,
        config: Optional[Settings] = None,
    ):
        """
        Initialize scheduler service.

        Args:
            repository: Durable store for vehicles, bookings and memberships
            index: Availability index (built over the repository if omitted)
            lock_manager: Per-vehicle lock registry
            clock: Time source
            publisher: Receives domain events after each mutation commits
            config: Settings override
        """
        super().__init__(repository)
        self.settings = config or default_settings
        self.index = index or AvailabilityIndex(repository)
        self.lock_manager = lock_manager or VehicleLockManager(self.settings)
        self.clock = clock or SystemClock()
        self.publisher = publisher or LoggingEventPublisher()
        self.state_machine = BookingStateMachine(self.settings)
        self.conflict_checker = ConflictChecker(self.index)

        if not self.index.loaded:
            with self.measure_operation_context("rebuild_index"):
                self.index.rebuild()

    # Internal helpers

    def _now(self) -> datetime:
        return ensure_utc(self.clock.now())

    @staticmethod
    def _require(actor: Actor, capability: Capability, action: str) -> None:
        if not actor.has(capability):
            raise UnauthorizedActionException(actor.id, action, capability.value)

    def _validate_window(self, start: datetime, end: datetime) -> Tuple[datetime, datetime]:
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise InvalidIntervalException(start=start.isoformat(), end=end.isoformat())
        if end - start > timedelta(hours=self.settings.max_booking_hours):
            raise InvalidIntervalException(
                f"Bookings may not exceed {self.settings.max_booking_hours} hours",
                start=start.isoformat(),
                end=end.isoformat(),
                max_booking_hours=self.settings.max_booking_hours,
            )
        return start, end

    @staticmethod
    def _validate_occupancy(occupancy: int) -> None:
        if occupancy < 1:
            raise ValidationException(
                "Occupancy must be at least 1",
                code="INVALID_OCCUPANCY",
                details={"occupancy": occupancy},
            )

    def _vehicle_of(self, booking_id: str) -> str:
        # A booking never moves to another vehicle, so this read needs no lock
        return self.repository.load_booking(booking_id).vehicle_id

    @contextmanager
    def _vehicle_mutation(self, vehicle_id: str, refresh: bool = False) -> Iterator[_Mutation]:
        """
        Run a unit of work under the vehicle's lock.

        On commit the changed bookings are applied to the index before the lock
        is released. When storage may have diverged from the index (storage
        error or unexpected failure) the vehicle's entries are dropped so the
        next lookup reloads them from the repository.
        """
        mutation = _Mutation()
        with self.lock_manager.hold(vehicle_id):
            try:
                with self.transaction():
                    self.repository.lock_vehicle(vehicle_id)
                    # Reload only once the row lock is held so no other process
                    # can commit a claim between the read and our check
                    if refresh or self.settings.index_refresh_on_lock:
                        self.index.refresh_vehicle(vehicle_id)
                    yield mutation
            except StorageException:
                self.index.invalidate(vehicle_id)
                raise
            except DomainException:
                raise
            except Exception:
                logger.error(
                    "Unexpected failure while mutating vehicle %s", vehicle_id, exc_info=True
                )
                self.index.invalidate(vehicle_id)
                raise

            for booking in mutation.bookings:
                self.index.apply(booking)
            for event, status in mutation.transitions:
                prometheus_metrics.record_transition(event.value, status.value)

        self._publish(mutation.events)

    def _publish(self, events: Iterable[Event]) -> None:
        for event in events:
            try:
                self.publisher.publish(event)
            except Exception as e:
                logger.error(f"Failed to publish {type(event).__name__}: {str(e)}")

    def _transition(
        self, mutation: _Mutation, booking: Booking, event: BookingEvent
    ) -> BookingStatus:
        target = self.state_machine.next_status(booking.status, event)
        mutation.transitions.append((event, target))
        return target

    def _close_memberships(self, booking: Booking, now: datetime) -> int:
        """Close every open seat on the booking; returns the seats released."""
        released = 0
        for membership in self.repository.list_memberships(booking.id, open_only=True):
            membership.left_at = now
            self.repository.save_membership(membership)
            released += membership.seats
        return released

    # Booking requests

    @BaseService.measure_operation("request_booking")
    def request_booking(
        self,
        actor: Actor,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        mode: BookingMode = BookingMode.EXCLUSIVE,
        occupancy: int = 1,
        purpose: str = "",
        *,
        destination: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> Booking:
        """
        Request a vehicle for [start, end).

        The request is admitted against every pending, approved and
        in-progress booking on the vehicle and stored as pending.

        Args:
            actor: Requester
            vehicle_id: Vehicle to book
            start: Window start
            end: Window end (exclusive)
            mode: Exclusive or shared
            occupancy: Seats needed
            purpose: Free-text purpose
            destination: Optional destination
            driver_id: Optional assigned driver

        Returns:
            The pending booking

        Raises:
            UnauthorizedActionException: Actor may not request bookings
            InvalidIntervalException: Empty, inverted or over-long window
            ValidationException: Occupancy below 1
            VehicleNotFoundException: Unknown vehicle
            VehicleUnavailableException: Vehicle in maintenance/unavailable
            ExclusiveConflictException: Window collides with an exclusive claim
            CapacityExceededException: Shared occupancy would exceed capacity
            StorageException: Repository failure (retryable)
        """
        self._require(actor, Capability.REQUEST_BOOKINGS, "request bookings")
        mode = BookingMode(mode)
        start, end = self._validate_window(start, end)
        self._validate_occupancy(occupancy)

        with self._vehicle_mutation(vehicle_id) as mutation:
            vehicle = self.repository.load_vehicle(vehicle_id)
            if not vehicle.is_bookable:
                raise VehicleUnavailableException(vehicle.id, vehicle.status.value)

            self.conflict_checker.check(vehicle, start, end, mode, occupancy).raise_for_rejection()

            booking = Booking(
                vehicle_id=vehicle.id,
                requester_id=actor.id,
                start_time=start,
                end_time=end,
                mode=mode,
                occupancy=occupancy,
                purpose=purpose,
                destination=destination,
                driver_id=driver_id,
                created_at=self._now(),
            )
            booking = mutation.record(self.repository.save_booking(booking))
            mutation.events.append(
                BookingRequested(
                    booking_id=booking.id,
                    vehicle_id=booking.vehicle_id,
                    requester_id=booking.requester_id,
                    mode=booking.mode.value,
                    start_time=booking.start_time,
                    end_time=booking.end_time,
                )
            )

        self.log_operation("request_booking", booking_id=booking.id, vehicle_id=vehicle_id)
        return booking

    # Lifecycle

    @BaseService.measure_operation("approve_booking")
    def approve(self, booking_id: str, actor: Actor) -> Booking:
        """
        Approve a pending booking.

        The vehicle's entries are reloaded from the repository and the booking
        is re-checked against approved and in-progress bookings only, so the
        first approval to land wins and later conflicting approvals fail.

        Raises:
            InvalidTransitionException: Booking is not pending
            ExclusiveConflictException / CapacityExceededException: A
                conflicting booking was approved first
        """
        vehicle_id = self._vehicle_of(booking_id)
        with self._vehicle_mutation(vehicle_id, refresh=True) as mutation:
            booking = self.repository.load_booking(booking_id)
            self.state_machine.authorize(BookingEvent.APPROVE, booking, actor)
            target = self._transition(mutation, booking, BookingEvent.APPROVE)

            vehicle = self.repository.load_vehicle(vehicle_id)
            if not vehicle.is_bookable:
                raise VehicleUnavailableException(vehicle.id, vehicle.status.value)

            self.conflict_checker.check(
                vehicle,
                booking.start_time,
                booking.end_time,
                booking.mode,
                booking.occupancy,
                statuses=COMMITTED_BOOKING_STATUSES,
                exclude_booking_id=booking.id,
            ).raise_for_rejection()

            now = self._now()
            booking.status = target
            booking.approver_id = actor.id
            booking.approved_at = now
            booking = mutation.record(self.repository.save_booking(booking))
            mutation.events.append(
                BookingApproved(
                    booking_id=booking.id,
                    vehicle_id=booking.vehicle_id,
                    approver_id=actor.id,
                    approved_at=now,
                )
            )

        if booking.covers(now):
            logger.info(
                f"Vehicle {vehicle_id} is committed from now by booking {booking.id}",
                extra={"vehicle_id": vehicle_id, "booking_id": booking.id},
            )
        return booking

    @BaseService.measure_operation("reject_booking")
    def reject(self, booking_id: str, actor: Actor, reason: Optional[str] = None) -> Booking:
        vehicle_id = self._vehicle_of(booking_id)
        with self._vehicle_mutation(vehicle_id) as mutation:
            booking = self.repository.load_booking(booking_id)
            self.state_machine.authorize(BookingEvent.REJECT, booking, actor)
            booking.status = self._transition(mutation, booking, BookingEvent.REJECT)

            now = self._now()
            booking.approver_id = actor.id
            booking.rejected_at = now
            booking.rejection_reason = reason
            booking = mutation.record(self.repository.save_booking(booking))
            mutation.events.append(
                BookingRejected(
                    booking_id=booking.id,
                    vehicle_id=booking.vehicle_id,
                    approver_id=actor.id,
                    rejected_at=now,
                    reason=reason,
                )
            )
        return booking

    @BaseService.measure_operation("cancel_booking")
    def cancel(self, booking_id: str, actor: Actor, reason: Optional[str] = None) -> Booking:
        """
        Cancel a pending or approved booking.

        Allowed for the requester or an actor who may cancel any booking.
        Open shared-ride seats are closed.
        """
        vehicle_id = self._vehicle_of(booking_id)
        with self._vehicle_mutation(vehicle_id) as mutation:
            booking = self.repository.load_booking(booking_id)
            self.state_machine.authorize(BookingEvent.CANCEL, booking, actor)
            booking.status = self._transition(mutation, booking, BookingEvent.CANCEL)

            now = self._now()
            booking.occupancy -= self._close_memberships(booking, now)
            booking.cancelled_at = now
            booking.cancelled_by_id = actor.id
            booking.cancellation_reason = reason
            booking = mutation.record(self.repository.save_booking(booking))
            mutation.events.append(
                BookingCancelled(
                    booking_id=booking.id,
                    vehicle_id=booking.vehicle_id,
                    cancelled_by=actor.id,
                    cancelled_at=now,
                    reason=reason,
                )
            )
        return booking

    @BaseService.measure_operation("start_booking")
    def start(self, booking_id: str, actor: Actor, odometer: Optional[int] = None) -> Booking:
        """
        Begin an approved trip.

        Raises:
            InvalidTransitionException: Booking is not approved, or it is
                earlier than start - start_grace_minutes
        """
        vehicle_id = self._vehicle_of(booking_id)
        with self._vehicle_mutation(vehicle_id) as mutation:
            booking = self.repository.load_booking(booking_id)
            self.state_machine.authorize(BookingEvent.START, booking, actor)
            target = self._transition(mutation, booking, BookingEvent.START)

            now = self._now()
            self.state_machine.ensure_startable(booking, now)
            if odometer is not None and odometer < 0:
                raise ValidationException(
                    "Odometer reading cannot be negative", details={"odometer": odometer}
                )

            booking.status = target
            booking.started_at = now
            booking.start_odometer = odometer
            booking = mutation.record(self.repository.save_booking(booking))
            mutation.events.append(
                BookingStarted(
                    booking_id=booking.id,
                    vehicle_id=booking.vehicle_id,
                    started_by=actor.id,
                    started_at=now,
                )
            )
        return booking

    @BaseService.measure_operation("end_booking")
    def end(self, booking_id: str, actor: Actor, odometer: Optional[int] = None) -> Booking:
        """
        Complete an in-progress trip.

        Closes any open seats and advances the vehicle's mileage when an
        odometer reading is given.

        Raises:
            InvalidTransitionException: Booking is not in progress
            ValidationException: Odometer reading below the starting reading
        """
        vehicle_id = self._vehicle_of(booking_id)
        with self._vehicle_mutation(vehicle_id) as mutation:
            booking = self.repository.load_booking(booking_id)
            self.state_machine.authorize(BookingEvent.END, booking, actor)
            target = self._transition(mutation, booking, BookingEvent.END)

            if (
                odometer is not None
                and booking.start_odometer is not None
                and odometer < booking.start_odometer
            ):
                raise ValidationException(
                    "Ending odometer must not be below the starting odometer",
                    code="INVALID_ODOMETER",
                    details={"start_odometer": booking.start_odometer, "end_odometer": odometer},
                )

            now = self._now()
            booking.occupancy -= self._close_memberships(booking, now)
            booking.status = target
            booking.completed_at = now
            booking.end_odometer = odometer
            booking = mutation.record(self.repository.save_booking(booking))

            if odometer is not None:
                vehicle = self.repository.load_vehicle(vehicle_id)
                if odometer > vehicle.current_mileage:
                    vehicle.current_mileage = odometer
                    self.repository.save_vehicle(vehicle)

            distance = None
            if odometer is not None and booking.start_odometer is not None:
                distance = odometer - booking.start_odometer
            mutation.events.append(
                BookingCompleted(
                    booking_id=booking.id,
                    vehicle_id=booking.vehicle_id,
                    completed_at=now,
                    distance=distance,
                )
            )
        return booking

    # Shared rides

    @BaseService.measure_operation("join_shared_ride")
    def join_shared(
        self, booking_id: str, rider: Actor, occupancy_delta: int = 1
    ) -> SharedRideMembership:
        """
        Add a rider to an approved or in-progress shared booking.

        The booking's occupancy grows by `occupancy_delta` and is re-checked
        against the approved and in-progress bookings on the vehicle.

        Raises:
            InvalidTransitionException: Booking not shared, not approved or in
                progress, or the rider already holds a seat
            CapacityExceededException: The vehicle would be over capacity
        """
        self._validate_occupancy(occupancy_delta)
        vehicle_id = self._vehicle_of(booking_id)
        with self._vehicle_mutation(vehicle_id) as mutation:
            booking = self.repository.load_booking(booking_id)
            self.state_machine.authorize(BookingEvent.JOIN, booking, rider)
            self.state_machine.ensure_seat_event(booking, BookingEvent.JOIN)

            membership = self.repository.load_membership(booking.id, rider.id)
            if membership is not None and membership.is_open:
                raise InvalidTransitionException(
                    f"Rider {rider.id} already holds a seat on booking {booking.id}",
                    from_status=booking.status.value,
                    event=BookingEvent.JOIN.value,
                    reason="already_joined",
                )

            vehicle = self.repository.load_vehicle(vehicle_id)
            new_occupancy = booking.occupancy + occupancy_delta
            self.conflict_checker.check(
                vehicle,
                booking.start_time,
                booking.end_time,
                BookingMode.SHARED,
                new_occupancy,
                statuses=COMMITTED_BOOKING_STATUSES,
                exclude_booking_id=booking.id,
            ).raise_for_rejection()

            now = self._now()
            if membership is None:
                membership = SharedRideMembership(
                    booking_id=booking.id,
                    rider_id=rider.id,
                    joined_at=now,
                    seats=occupancy_delta,
                )
            else:
                # Rejoining reopens the rider's existing membership
                membership.joined_at = now
                membership.left_at = None
                membership.seats = occupancy_delta
            membership = self.repository.save_membership(membership)

            booking.occupancy = new_occupancy
            booking = mutation.record(self.repository.save_booking(booking))
            mutation.transitions.append((BookingEvent.JOIN, booking.status))
            mutation.events.append(
                RiderJoined(
                    booking_id=booking.id,
                    rider_id=rider.id,
                    seats=membership.seats,
                    occupancy=booking.occupancy,
                    joined_at=now,
                )
            )
        return membership

    @BaseService.measure_operation("leave_shared_ride")
    def leave_shared(self, booking_id: str, rider_id: str, actor: Actor) -> None:
        """
        Close a rider's seat. The booking's occupancy drops immediately.

        Allowed for the rider themselves or an actor who may cancel any
        booking.

        Raises:
            MembershipNotFoundException: Rider has no open seat
        """
        vehicle_id = self._vehicle_of(booking_id)
        with self._vehicle_mutation(vehicle_id) as mutation:
            booking = self.repository.load_booking(booking_id)
            self.state_machine.authorize(BookingEvent.LEAVE, booking, actor, subject_id=rider_id)
            self.state_machine.ensure_seat_event(booking, BookingEvent.LEAVE)

            membership = self.repository.load_membership(booking.id, rider_id)
            if membership is None or not membership.is_open:
                raise MembershipNotFoundException(booking.id, rider_id)

            now = self._now()
            membership.left_at = now
            self.repository.save_membership(membership)

            booking.occupancy -= membership.seats
            booking = mutation.record(self.repository.save_booking(booking))
            mutation.transitions.append((BookingEvent.LEAVE, booking.status))
            mutation.events.append(
                RiderLeft(
                    booking_id=booking.id,
                    rider_id=rider_id,
                    seats=membership.seats,
                    occupancy=booking.occupancy,
                    left_at=now,
                )
            )

    # Reads

    def get_booking(self, booking_id: str) -> Booking:
        return self.repository.load_booking(booking_id)

    def list_bookings_for_vehicle(
        self,
        vehicle_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> List[Booking]:
        self.repository.load_vehicle(vehicle_id)
        return self.repository.list_bookings_for_vehicle(
            vehicle_id,
            ensure_utc(start) if start else None,
            ensure_utc(end) if end else None,
            statuses,
        )

    def list_memberships(
        self, booking_id: str, open_only: bool = True
    ) -> List[SharedRideMembership]:
        self.repository.load_booking(booking_id)
        return self.repository.list_memberships(booking_id, open_only=open_only)

    def vehicle_status(self, vehicle_id: str, at: Optional[datetime] = None) -> VehicleStatus:
        """
        Derived status of a vehicle at `at` (default: now).

        The administrative flag wins; otherwise the vehicle is in use while a
        trip is in progress or an approved booking covers the instant.
        """
        vehicle = self.repository.load_vehicle(vehicle_id)
        if not vehicle.is_bookable:
            return vehicle.status

        instant = ensure_utc(at) if at else self._now()
        committed = self.repository.list_bookings_for_vehicle(
            vehicle_id, statuses=COMMITTED_BOOKING_STATUSES
        )
        for booking in committed:
            if booking.status == BookingStatus.IN_PROGRESS or booking.covers(instant):
                return VehicleStatus.IN_USE
        return VehicleStatus.AVAILABLE

    @BaseService.measure_operation("available_vehicles")
    def available_vehicles(
        self,
        start: datetime,
        end: datetime,
        mode: BookingMode = BookingMode.EXCLUSIVE,
        occupancy: int = 1,
    ) -> List[Vehicle]:
        """Vehicles that would currently admit the request, ordered by id."""
        mode = BookingMode(mode)
        start, end = self._validate_window(start, end)
        self._validate_occupancy(occupancy)

        available = []
        for vehicle in self.repository.list_vehicles():
            if not vehicle.is_bookable:
                continue
            entries = self.index.intervals_for(vehicle.id, start, end)
            if evaluate_admission(vehicle.capacity, entries, start, end, mode, occupancy).admitted:
                available.append(vehicle)
        return available

    # Fleet administration

    @BaseService.measure_operation("set_vehicle_status")
    def set_vehicle_status(self, vehicle_id: str, status: VehicleStatus, actor: Actor) -> Vehicle:
        """
        Set a vehicle's administrative flag.

        Raises:
            UnauthorizedActionException: Actor may not manage vehicles
            ValidationException: `in_use` requested (it is derived)
            InvalidTransitionException: Taking the vehicle out of service while
                approved or in-progress bookings still need it
        """
        self._require(actor, Capability.MANAGE_VEHICLES, "manage vehicles")
        status = VehicleStatus(status)
        if status == VehicleStatus.IN_USE:
            raise ValidationException(
                "in_use is derived from bookings and cannot be set",
                code="DERIVED_VEHICLE_STATUS",
                details={"vehicle_id": vehicle_id},
            )

        with self._vehicle_mutation(vehicle_id):
            vehicle = self.repository.load_vehicle(vehicle_id)
            if status in (VehicleStatus.MAINTENANCE, VehicleStatus.UNAVAILABLE):
                now = self._now()
                blocking = [
                    booking.id
                    for booking in self.repository.list_bookings_for_vehicle(
                        vehicle_id, statuses=COMMITTED_BOOKING_STATUSES
                    )
                    if booking.status == BookingStatus.IN_PROGRESS or booking.end_time > now
                ]
                if blocking:
                    raise InvalidTransitionException(
                        f"Vehicle {vehicle_id} has approved or in-progress bookings",
                        vehicle_id=vehicle_id,
                        to_status=status.value,
                        booking_ids=blocking,
                    )

            previous = vehicle.status
            vehicle.status = status
            vehicle = self.repository.save_vehicle(vehicle)

        logger.info(
            f"Vehicle {vehicle_id} status {previous.value} -> {status.value}",
            extra={"vehicle_id": vehicle_id, "actor_id": actor.id},
        )
        return vehicle
