"""
Integration tests for the SQLAlchemy scheduler repository.

Runs against in-memory SQLite (StaticPool, shared connection) and drives the
full scheduler through it end to end. A file-backed database stands in for
several scheduler processes sharing one store.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import text

from fleet_scheduler.core.enums import BookingMode, BookingStatus, VehicleStatus
from fleet_scheduler.core.exceptions import (
    BookingNotFoundException,
    CapacityExceededException,
    ExclusiveConflictException,
    StorageException,
    VehicleNotFoundException,
)
from fleet_scheduler.core.vehicle_lock import VehicleLockManager
from fleet_scheduler.database import build_engine, init_db, make_session_factory
from fleet_scheduler.domain import Booking, SharedRideMembership, Vehicle
from fleet_scheduler.repositories import RepositoryFactory, SqlAlchemySchedulerRepository

pytestmark = pytest.mark.integration


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_repository(engine) -> SqlAlchemySchedulerRepository:
    return SqlAlchemySchedulerRepository(make_session_factory(engine))


@pytest.fixture
def sql_van(sql_repository) -> Vehicle:
    return sql_repository.save_vehicle(
        Vehicle(capacity=4, make="Toyota", model="Hiace", license_plate="VAN-004")
    )


@pytest.fixture
def sql_car(sql_repository) -> Vehicle:
    return sql_repository.save_vehicle(
        Vehicle(capacity=1, make="Toyota", model="Corolla", license_plate="SOLO-001")
    )


@pytest.fixture
def sql_scheduler(make_scheduler, sql_repository):
    return make_scheduler(backend=sql_repository)


def _booking(vehicle, at, start=9, end=10, **kwargs):
    return Booking(
        vehicle_id=vehicle.id,
        requester_id="requester-1",
        start_time=at(start),
        end_time=at(end),
        **kwargs,
    )


class TestSchema:
    def test_tables_created(self, engine):
        with engine.connect() as conn:
            names = {
                row[0]
                for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))
            }
        assert {"vehicles", "bookings", "shared_ride_memberships"} <= names

    def test_factory_builds_sql_repository(self, engine):
        repository = RepositoryFactory.create_sqlalchemy_repository(make_session_factory(engine))
        assert isinstance(repository, SqlAlchemySchedulerRepository)


class TestVehicleRecords:
    def test_round_trip(self, sql_repository, sql_van):
        loaded = sql_repository.load_vehicle(sql_van.id)

        assert loaded == sql_van
        assert loaded.status == VehicleStatus.AVAILABLE

    def test_update_via_merge(self, sql_repository, sql_van):
        sql_van.current_mileage = 1200
        sql_van.status = VehicleStatus.MAINTENANCE
        sql_repository.save_vehicle(sql_van)

        loaded = sql_repository.load_vehicle(sql_van.id)
        assert loaded.current_mileage == 1200
        assert loaded.status == VehicleStatus.MAINTENANCE

    def test_unknown_vehicle(self, sql_repository):
        with pytest.raises(VehicleNotFoundException):
            sql_repository.load_vehicle("missing")
        with pytest.raises(VehicleNotFoundException):
            sql_repository.lock_vehicle("missing")


class TestBookingRecords:
    def test_insert_and_load_keep_utc(self, sql_repository, sql_van, at):
        stored = sql_repository.save_booking(_booking(sql_van, at, purpose="Site visit"))
        loaded = sql_repository.load_booking(stored.id)

        assert loaded.version == 1
        assert loaded.start_time == at(9)
        assert loaded.start_time.tzinfo is not None
        assert loaded.purpose == "Site visit"
        assert loaded.mode == BookingMode.EXCLUSIVE

    def test_stale_version_rejected(self, sql_repository, sql_van, at):
        stored = sql_repository.save_booking(_booking(sql_van, at))
        first = sql_repository.load_booking(stored.id)
        second = sql_repository.load_booking(stored.id)

        first.status = BookingStatus.APPROVED
        assert sql_repository.save_booking(first).version == 2

        second.status = BookingStatus.CANCELLED
        with pytest.raises(StorageException):
            sql_repository.save_booking(second)
        assert sql_repository.load_booking(stored.id).status == BookingStatus.APPROVED

    def test_duplicate_insert_rejected(self, sql_repository, sql_van, at):
        booking = _booking(sql_van, at)
        sql_repository.save_booking(booking)

        with pytest.raises(StorageException):
            sql_repository.save_booking(booking)

    def test_window_and_status_filters(self, sql_repository, sql_van, at):
        early = sql_repository.save_booking(_booking(sql_van, at, start=8, end=9))
        sql_repository.save_booking(_booking(sql_van, at, start=9, end=10))
        sql_repository.save_booking(
            _booking(sql_van, at, start=11, end=12, status=BookingStatus.CANCELLED)
        )

        touching = sql_repository.list_bookings_for_vehicle(sql_van.id, at(7), at(9))
        active = sql_repository.list_active_bookings()

        assert [b.id for b in touching] == [early.id]
        assert [b.start_time for b in active] == [at(8), at(9)]

    def test_unknown_booking(self, sql_repository):
        with pytest.raises(BookingNotFoundException):
            sql_repository.load_booking("missing")


class TestTransactions:
    def test_rollback_discards_all_writes(self, sql_repository, sql_van, at):
        booking = _booking(sql_van, at, mode=BookingMode.SHARED)

        with pytest.raises(RuntimeError):
            with sql_repository.transaction():
                sql_repository.lock_vehicle(sql_van.id)
                sql_repository.save_booking(booking)
                sql_repository.save_membership(
                    SharedRideMembership(booking_id=booking.id, rider_id="r-1", joined_at=at(8))
                )
                raise RuntimeError("boom")

        with pytest.raises(BookingNotFoundException):
            sql_repository.load_booking(booking.id)
        assert sql_repository.load_membership(booking.id, "r-1") is None

    def test_commit_persists_memberships(self, sql_repository, sql_van, at):
        booking = _booking(sql_van, at, mode=BookingMode.SHARED)
        with sql_repository.transaction():
            sql_repository.save_booking(booking)
            sql_repository.save_membership(
                SharedRideMembership(booking_id=booking.id, rider_id="r-1", joined_at=at(8))
            )
            sql_repository.save_membership(
                SharedRideMembership(
                    booking_id=booking.id,
                    rider_id="r-2",
                    joined_at=at(7),
                    left_at=at(7) + timedelta(minutes=10),
                )
            )

        assert [m.rider_id for m in sql_repository.list_memberships(booking.id)] == ["r-1"]
        assert [
            m.rider_id for m in sql_repository.list_memberships(booking.id, open_only=False)
        ] == ["r-2", "r-1"]


class TestSchedulerOnSql:
    def test_exclusive_lifecycle(self, sql_scheduler, sql_car, requester, approver, driver, at, clock):
        booking = sql_scheduler.request_booking(
            requester, sql_car.id, at(9), at(10), driver_id=driver.id
        )
        sql_scheduler.approve(booking.id, approver)

        with pytest.raises(ExclusiveConflictException):
            sql_scheduler.request_booking(requester, sql_car.id, at(9, 30), at(10, 30))

        clock.set(at(9))
        sql_scheduler.start(booking.id, driver, odometer=100)
        assert sql_scheduler.vehicle_status(sql_car.id) == VehicleStatus.IN_USE

        completed = sql_scheduler.end(booking.id, driver, odometer=142)
        assert completed.status == BookingStatus.COMPLETED
        assert sql_scheduler.repository.load_vehicle(sql_car.id).current_mileage == 142
        assert sql_scheduler.vehicle_status(sql_car.id) == VehicleStatus.AVAILABLE

    def test_shared_capacity_enforced(
        self, sql_scheduler, sql_van, requester, other_requester, approver, rider, at
    ):
        first = sql_scheduler.request_booking(
            requester, sql_van.id, at(9), at(11), mode=BookingMode.SHARED, occupancy=2
        )
        sql_scheduler.approve(first.id, approver)
        second = sql_scheduler.request_booking(
            other_requester, sql_van.id, at(10), at(12), mode=BookingMode.SHARED, occupancy=1
        )
        sql_scheduler.approve(second.id, approver)

        sql_scheduler.join_shared(first.id, rider)
        assert sql_scheduler.get_booking(first.id).occupancy == 3

        with pytest.raises(CapacityExceededException):
            sql_scheduler.request_booking(
                other_requester, sql_van.id, at(10, 30), at(11), mode=BookingMode.SHARED
            )

        sql_scheduler.leave_shared(first.id, rider.id, rider)
        assert sql_scheduler.get_booking(first.id).occupancy == 2
        assert sql_scheduler.list_memberships(first.id) == []

    def test_failed_mutation_leaves_storage_untouched(
        self, sql_scheduler, sql_van, requester, approver, rider, at
    ):
        booking = sql_scheduler.request_booking(
            requester, sql_van.id, at(9), at(10), mode=BookingMode.SHARED, occupancy=4
        )
        sql_scheduler.approve(booking.id, approver)

        with pytest.raises(CapacityExceededException):
            sql_scheduler.join_shared(booking.id, rider)

        assert sql_scheduler.repository.load_membership(booking.id, rider.id) is None
        assert sql_scheduler.get_booking(booking.id).occupancy == 4

    def test_index_rebuilt_from_storage(
        self, make_scheduler, sql_repository, sql_car, requester, approver, at
    ):
        first = make_scheduler(backend=sql_repository)
        booking = first.request_booking(requester, sql_car.id, at(9), at(10))
        first.approve(booking.id, approver)

        # A second process over the same database sees the committed claim
        second = make_scheduler(backend=sql_repository)
        assert second.available_vehicles(at(9), at(10)) == []
        assert [v.id for v in second.available_vehicles(at(10), at(11))] == [sql_car.id]


class TestSharedStoreAcrossInstances:
    """Two scheduler processes over one database, without a Redis mutex."""

    @pytest.fixture
    def shared_url(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'fleet.db'}"
        engine = build_engine(url)
        init_db(engine)
        engine.dispose()
        return url

    @pytest.fixture
    def instance(self, shared_url, make_scheduler, test_settings):
        settings = test_settings.model_copy(update={"index_refresh_on_lock": True})
        engines = []

        def _make():
            engine = build_engine(shared_url)
            engines.append(engine)
            repository = SqlAlchemySchedulerRepository(make_session_factory(engine))
            return make_scheduler(
                backend=repository,
                config=settings,
                lock_manager=VehicleLockManager(settings),
            )

        yield _make
        for engine in engines:
            engine.dispose()

    def test_claim_committed_before_row_lock_is_seen(
        self, instance, requester, other_requester, at
    ):
        first = instance()
        second = instance()
        car = first.repository.save_vehicle(Vehicle(capacity=1, license_plate="SOLO-001"))

        # Both indexes are loaded before either booking exists
        assert first.available_vehicles(at(8), at(10)) == [car]
        assert second.available_vehicles(at(8), at(10)) == [car]

        take_row_lock = first.repository.lock_vehicle

        def lock_after_other_instance_commits(vehicle_id):
            second.request_booking(other_requester, car.id, at(8), at(9))
            take_row_lock(vehicle_id)

        with patch.object(
            first.repository, "lock_vehicle", side_effect=lock_after_other_instance_commits
        ):
            with pytest.raises(ExclusiveConflictException):
                first.request_booking(requester, car.id, at(8, 30), at(9, 30))

        pending = first.repository.list_bookings_for_vehicle(
            car.id, statuses=[BookingStatus.PENDING]
        )
        assert [(b.requester_id, b.start_time) for b in pending] == [(other_requester.id, at(8))]

    def test_approval_sees_cancellation_from_other_instance(
        self, instance, requester, other_requester, approver, at
    ):
        first = instance()
        second = instance()
        car = first.repository.save_vehicle(Vehicle(capacity=1, license_plate="SOLO-002"))

        booking = first.request_booking(requester, car.id, at(8), at(9))
        first.approve(booking.id, approver)
        second.cancel(booking.id, requester)

        # first still caches the approved claim; the locked reload drops it
        replacement = first.request_booking(other_requester, car.id, at(8), at(9))
        assert first.approve(replacement.id, approver).status == BookingStatus.APPROVED
