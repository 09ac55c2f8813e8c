# backend/fleet_scheduler/repositories/sqlalchemy_repository.py
"""
SQLAlchemy Scheduler Repository.

Durable backend shared by any number of scheduler processes:
- One scoped session per thread; transaction() owns commit/rollback
- lock_vehicle() takes a row lock (SELECT ... FOR UPDATE) on the vehicle
- save_booking() is a compare-and-swap on the version column
- Every SQLAlchemyError surfaces as a retryable StorageException
"""

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
import logging
import threading
from typing import Iterable, Iterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from ..core.enums import ACTIVE_BOOKING_STATUSES, BookingStatus
from ..core.exceptions import (
    BookingNotFoundException,
    StorageException,
    VehicleNotFoundException,
)
from ..domain.entities import Booking, SharedRideMembership, Vehicle
from ..models import BookingRecord, SharedRideMembershipRecord, VehicleRecord
from .scheduler_repository import SchedulerRepository

logger = logging.getLogger(__name__)

_BOOKING_FIELDS = (
    "vehicle_id",
    "requester_id",
    "start_time",
    "end_time",
    "purpose",
    "destination",
    "driver_id",
    "approver_id",
    "cancelled_by_id",
    "cancellation_reason",
    "rejection_reason",
    "start_odometer",
    "end_odometer",
    "created_at",
    "approved_at",
    "rejected_at",
    "started_at",
    "completed_at",
    "cancelled_at",
    "occupancy",
)


def _to_vehicle(record: VehicleRecord) -> Vehicle:
    return Vehicle(
        id=record.id,
        capacity=record.capacity,
        status=record.status,
        make=record.make or "",
        model=record.model or "",
        license_plate=record.license_plate or "",
        current_mileage=record.current_mileage or 0,
    )


def _to_booking(record: BookingRecord) -> Booking:
    values = {name: getattr(record, name) for name in _BOOKING_FIELDS}
    return Booking(id=record.id, mode=record.mode, status=record.status, version=record.version, **values)


def _booking_values(booking: Booking) -> dict:
    values = {name: getattr(booking, name) for name in _BOOKING_FIELDS}
    values["mode"] = booking.mode.value
    values["status"] = booking.status.value
    return values


def _to_membership(record: SharedRideMembershipRecord) -> SharedRideMembership:
    return SharedRideMembership(
        booking_id=record.booking_id,
        rider_id=record.rider_id,
        seats=record.seats,
        joined_at=record.joined_at,
        left_at=record.left_at,
    )


class SqlAlchemySchedulerRepository(SchedulerRepository):
    """Scheduler repository backed by a relational database."""

    def __init__(self, session_factory: sessionmaker):
        self._sessions = scoped_session(session_factory)
        self._local = threading.local()

    @property
    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    @_depth.setter
    def _depth(self, value: int) -> None:
        self._local.depth = value

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._depth:
            # Nested blocks join the outer transaction
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        session: Session = self._sessions()
        self._depth = 1
        try:
            yield
            session.commit()
        except SQLAlchemyError as exc:
            logger.error("Scheduler transaction failed: %s", exc)
            session.rollback()
            raise StorageException(
                "Failed to commit scheduler transaction",
                details={"error": str(exc)},
            ) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            self._depth = 0
            self._sessions.remove()

    @contextmanager
    def _unit(self, operation: str) -> Iterator[Session]:
        """
        Session for one repository call.

        Inside transaction() the caller's session is reused and left open;
        otherwise the call runs in its own short transaction.
        """
        session: Session = self._sessions()
        standalone = not self._depth
        try:
            yield session
            if standalone:
                session.commit()
        except SQLAlchemyError as exc:
            logger.error("Repository %s failed: %s", operation, exc)
            if standalone:
                session.rollback()
            raise StorageException(
                f"Storage failure during {operation}",
                details={"operation": operation, "error": str(exc)},
            ) from exc
        except Exception:
            if standalone:
                session.rollback()
            raise
        finally:
            if standalone:
                self._sessions.remove()

    def lock_vehicle(self, vehicle_id: str) -> None:
        with self._unit("lock_vehicle") as session:
            stmt = select(VehicleRecord.id).where(VehicleRecord.id == vehicle_id).with_for_update()
            if session.execute(stmt).scalar_one_or_none() is None:
                raise VehicleNotFoundException(vehicle_id)

    # Vehicles

    def load_vehicle(self, vehicle_id: str) -> Vehicle:
        with self._unit("load_vehicle") as session:
            record = session.get(VehicleRecord, vehicle_id, populate_existing=True)
            if record is None:
                raise VehicleNotFoundException(vehicle_id)
            return _to_vehicle(record)

    def list_vehicles(self) -> List[Vehicle]:
        with self._unit("list_vehicles") as session:
            records = session.execute(select(VehicleRecord).order_by(VehicleRecord.id)).scalars()
            return [_to_vehicle(record) for record in records]

    def save_vehicle(self, vehicle: Vehicle) -> Vehicle:
        with self._unit("save_vehicle") as session:
            record = session.merge(
                VehicleRecord(
                    id=vehicle.id,
                    capacity=vehicle.capacity,
                    status=vehicle.status.value,
                    make=vehicle.make,
                    model=vehicle.model,
                    license_plate=vehicle.license_plate,
                    current_mileage=vehicle.current_mileage,
                )
            )
            session.flush()
            return _to_vehicle(record)

    # Bookings

    def load_booking(self, booking_id: str) -> Booking:
        with self._unit("load_booking") as session:
            record = session.get(BookingRecord, booking_id, populate_existing=True)
            if record is None:
                raise BookingNotFoundException(booking_id)
            return _to_booking(record)

    def list_bookings_for_vehicle(
        self,
        vehicle_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> List[Booking]:
        stmt = select(BookingRecord).where(BookingRecord.vehicle_id == vehicle_id)
        if start is not None:
            stmt = stmt.where(BookingRecord.end_time > start)
        if end is not None:
            stmt = stmt.where(BookingRecord.start_time < end)
        if statuses is not None:
            stmt = stmt.where(BookingRecord.status.in_([BookingStatus(s).value for s in statuses]))
        stmt = stmt.order_by(BookingRecord.start_time, BookingRecord.id)
        stmt = stmt.execution_options(populate_existing=True)

        with self._unit("list_bookings_for_vehicle") as session:
            return [_to_booking(record) for record in session.execute(stmt).scalars()]

    def list_active_bookings(self) -> List[Booking]:
        stmt = (
            select(BookingRecord)
            .where(BookingRecord.status.in_([s.value for s in ACTIVE_BOOKING_STATUSES]))
            .order_by(BookingRecord.vehicle_id, BookingRecord.start_time, BookingRecord.id)
            .execution_options(populate_existing=True)
        )
        with self._unit("list_active_bookings") as session:
            return [_to_booking(record) for record in session.execute(stmt).scalars()]

    def save_booking(self, booking: Booking) -> Booking:
        values = _booking_values(booking)
        new_version = booking.version + 1

        with self._unit("save_booking") as session:
            if booking.version == 0:
                try:
                    session.add(BookingRecord(id=booking.id, version=new_version, **values))
                    session.flush()
                except IntegrityError as exc:
                    raise StorageException(
                        f"Booking {booking.id} could not be inserted",
                        details={"booking_id": booking.id, "error": str(exc.orig)},
                    ) from exc
            else:
                stmt = (
                    update(BookingRecord)
                    .where(BookingRecord.id == booking.id)
                    .where(BookingRecord.version == booking.version)
                    .values(version=new_version, **values)
                    .execution_options(synchronize_session=False)
                )
                result = session.execute(stmt)
                if result.rowcount != 1:
                    logger.warning(
                        "Stale booking write rejected",
                        extra={"booking_id": booking.id, "version": booking.version},
                    )
                    raise StorageException(
                        f"Booking {booking.id} was modified concurrently",
                        details={"booking_id": booking.id, "version": booking.version},
                    )

        return replace(booking, version=new_version)

    # Memberships

    def load_membership(self, booking_id: str, rider_id: str) -> Optional[SharedRideMembership]:
        with self._unit("load_membership") as session:
            record = session.get(
                SharedRideMembershipRecord, (booking_id, rider_id), populate_existing=True
            )
            return _to_membership(record) if record else None

    def list_memberships(
        self, booking_id: str, open_only: bool = True
    ) -> List[SharedRideMembership]:
        stmt = select(SharedRideMembershipRecord).where(
            SharedRideMembershipRecord.booking_id == booking_id
        )
        if open_only:
            stmt = stmt.where(SharedRideMembershipRecord.left_at.is_(None))
        stmt = stmt.order_by(
            SharedRideMembershipRecord.joined_at, SharedRideMembershipRecord.rider_id
        ).execution_options(populate_existing=True)

        with self._unit("list_memberships") as session:
            return [_to_membership(record) for record in session.execute(stmt).scalars()]

    def save_membership(self, membership: SharedRideMembership) -> SharedRideMembership:
        with self._unit("save_membership") as session:
            record = session.merge(
                SharedRideMembershipRecord(
                    booking_id=membership.booking_id,
                    rider_id=membership.rider_id,
                    seats=membership.seats,
                    joined_at=membership.joined_at,
                    left_at=membership.left_at,
                )
            )
            session.flush()
            return _to_membership(record)
