# backend/tests/conftest.py
"""
Shared fixtures for the scheduler test suite.

Time is pinned with a FrozenClock at 07:00 UTC on 2 March 2026 and every
scheduler built here uses the in-memory repository unless a test swaps it.
"""

import os

# Keep a developer's .env out of test settings
os.environ.setdefault("CI", "true")

from datetime import datetime, timezone
from typing import Callable

import pytest

from fleet_scheduler.core.clock import FrozenClock
from fleet_scheduler.core.config import Settings
from fleet_scheduler.core.enums import Capability
from fleet_scheduler.core.vehicle_lock import VehicleLockManager
from fleet_scheduler.domain import (
    APPROVER_CAPABILITIES,
    DRIVER_CAPABILITIES,
    REQUESTER_CAPABILITIES,
    Actor,
    Vehicle,
)
from fleet_scheduler.events import RecordingEventPublisher
from fleet_scheduler.repositories import InMemorySchedulerRepository
from fleet_scheduler.services import SchedulerService

BASE_TIME = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)


@pytest.fixture
def at() -> Callable[..., datetime]:
    """Build a UTC instant on the test day: at(9, 30) -> 2026-03-02 09:30Z."""

    def _at(hour: int, minute: int = 0, day: int = 2) -> datetime:
        return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)

    return _at


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(BASE_TIME)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        start_grace_minutes=30,
        max_booking_hours=72,
        vehicle_lock_wait_seconds=5.0,
        distributed_locks_enabled=False,
        index_refresh_on_lock=False,
    )


@pytest.fixture
def repository() -> InMemorySchedulerRepository:
    return InMemorySchedulerRepository()


@pytest.fixture
def publisher() -> RecordingEventPublisher:
    return RecordingEventPublisher()


# Actors


@pytest.fixture
def requester() -> Actor:
    return Actor("requester-1", REQUESTER_CAPABILITIES)


@pytest.fixture
def other_requester() -> Actor:
    return Actor("requester-2", REQUESTER_CAPABILITIES)


@pytest.fixture
def approver() -> Actor:
    return Actor("approver-1", APPROVER_CAPABILITIES)


@pytest.fixture
def driver() -> Actor:
    return Actor("driver-1", DRIVER_CAPABILITIES)


@pytest.fixture
def admin() -> Actor:
    return Actor.admin("admin-1")


@pytest.fixture
def rider() -> Actor:
    return Actor("rider-1", frozenset({Capability.JOIN_SHARED_RIDES}))


@pytest.fixture
def outsider() -> Actor:
    return Actor("outsider-1")


# Vehicles


@pytest.fixture
def vehicle_factory(repository) -> Callable[..., Vehicle]:
    def _make(capacity: int = 1, **kwargs) -> Vehicle:
        kwargs.setdefault("make", "Toyota")
        kwargs.setdefault("model", "Hiace" if capacity > 1 else "Corolla")
        return repository.save_vehicle(Vehicle(capacity=capacity, **kwargs))

    return _make


@pytest.fixture
def solo_vehicle(vehicle_factory) -> Vehicle:
    return vehicle_factory(capacity=1, license_plate="SOLO-001")


@pytest.fixture
def van(vehicle_factory) -> Vehicle:
    return vehicle_factory(capacity=4, license_plate="VAN-004")


# Scheduler


@pytest.fixture
def make_scheduler(repository, clock, publisher, test_settings) -> Callable[..., SchedulerService]:
    def _make(backend=None, **overrides) -> SchedulerService:
        kwargs = {
            "clock": clock,
            "publisher": publisher,
            "config": test_settings,
            "lock_manager": VehicleLockManager(test_settings),
        }
        kwargs.update(overrides)
        return SchedulerService(backend if backend is not None else repository, **kwargs)

    return _make


@pytest.fixture
def scheduler(make_scheduler) -> SchedulerService:
    return make_scheduler()
