"""
Unit tests for vehicle_lock.py.

Coverage:
1) Key generation
2) Process-local serialization per vehicle
3) Redis mutex acquisition/release with owner tokens
4) Graceful degradation when Redis is unavailable
5) Timeouts
"""

import threading
import time
from unittest.mock import ANY, MagicMock, patch

import pytest

from fleet_scheduler.core.config import Settings
from fleet_scheduler.core.exceptions import LockTimeoutException
from fleet_scheduler.core.vehicle_lock import VehicleLockManager, _lock_key


def _settings(**overrides):
    values = {
        "vehicle_lock_wait_seconds": 0.5,
        "vehicle_lock_poll_interval_seconds": 0.01,
        "vehicle_lock_ttl_seconds": 30,
        "lock_namespace": "fleet",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _distributed(redis_client, **overrides):
    return VehicleLockManager(
        _settings(distributed_locks_enabled=True, **overrides), redis_client=redis_client
    )


class TestKeyGeneration:
    def test_lock_key_format(self):
        assert _lock_key("ABC123") == "vehicle:ABC123:mutex"

    def test_namespaced_key_format(self):
        manager = VehicleLockManager(_settings(lock_namespace="fleet-test"))
        assert manager._namespaced_key("vehicle:ABC123:mutex") == (
            "fleet-test:lock:vehicle:ABC123:mutex"
        )


class TestLocalLocking:
    def test_same_vehicle_serializes(self):
        manager = VehicleLockManager(_settings(vehicle_lock_wait_seconds=5.0))
        inside = []
        overlaps = []
        guard = threading.Lock()

        def worker():
            with manager.hold("veh-1"):
                with guard:
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(True)
                time.sleep(0.01)
                with guard:
                    inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []

    def test_distinct_vehicles_do_not_contend(self):
        manager = VehicleLockManager(_settings(vehicle_lock_wait_seconds=0.1))
        with manager.hold("veh-1"):
            with manager.hold("veh-2"):
                pass

    def test_timeout_when_held(self):
        manager = VehicleLockManager(_settings(vehicle_lock_wait_seconds=0.05))
        held = threading.Event()
        release = threading.Event()

        def holder():
            with manager.hold("veh-1"):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        try:
            with pytest.raises(LockTimeoutException) as exc_info:
                with manager.hold("veh-1"):
                    pass
            assert exc_info.value.details["stage"] == "local"
        finally:
            release.set()
            thread.join()

    def test_released_on_exception(self):
        manager = VehicleLockManager(_settings(vehicle_lock_wait_seconds=0.05))
        with pytest.raises(ValueError):
            with manager.hold("veh-1"):
                raise ValueError("boom")
        with manager.hold("veh-1"):
            pass

    def test_registry_drops_idle_vehicles(self):
        manager = VehicleLockManager(_settings())
        for i in range(100):
            with manager.hold(f"unknown-{i}"):
                pass

        assert manager.tracked_vehicles() == 0

    def test_registry_keeps_contended_vehicle(self):
        manager = VehicleLockManager(_settings(vehicle_lock_wait_seconds=5.0))
        held = threading.Event()
        release = threading.Event()
        waiter_done = threading.Event()

        def holder():
            with manager.hold("veh-1"):
                held.set()
                release.wait(2)

        def waiter():
            with manager.hold("veh-1"):
                waiter_done.set()

        first = threading.Thread(target=holder)
        first.start()
        held.wait(2)
        second = threading.Thread(target=waiter)
        second.start()
        time.sleep(0.05)

        assert manager.tracked_vehicles() == 1
        release.set()
        first.join()
        second.join()

        assert waiter_done.is_set()
        assert manager.tracked_vehicles() == 0

    def test_registry_released_after_timeout(self):
        manager = VehicleLockManager(_settings(vehicle_lock_wait_seconds=0.05))
        held = threading.Event()
        release = threading.Event()

        def holder():
            with manager.hold("veh-1"):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        with pytest.raises(LockTimeoutException):
            with manager.hold("veh-1"):
                pass
        assert manager.tracked_vehicles() == 1
        release.set()
        thread.join()

        assert manager.tracked_vehicles() == 0

    def test_redis_not_touched_when_disabled(self):
        redis_client = MagicMock()
        manager = VehicleLockManager(_settings(), redis_client=redis_client)
        with manager.hold("veh-1"):
            pass
        redis_client.set.assert_not_called()


class TestDistributedLocking:
    def test_acquire_and_release(self):
        redis_client = MagicMock()
        redis_client.set.return_value = True
        manager = _distributed(redis_client)
        key = "fleet:lock:vehicle:ABC123:mutex"

        with manager.hold("ABC123"):
            redis_client.set.assert_called_once_with(key, ANY, nx=True, ex=30)
            token = redis_client.set.call_args.args[1]
            redis_client.get.return_value = token

        redis_client.delete.assert_called_once_with(key)

    def test_does_not_delete_foreign_mutex(self):
        redis_client = MagicMock()
        redis_client.set.return_value = True
        redis_client.get.return_value = "someone-else"
        manager = _distributed(redis_client)

        with manager.hold("ABC123"):
            pass

        redis_client.delete.assert_not_called()

    def test_polls_until_free(self):
        redis_client = MagicMock()
        redis_client.set.side_effect = [False, False, True]
        manager = _distributed(redis_client)

        with manager.hold("ABC123"):
            pass

        assert redis_client.set.call_count == 3

    def test_times_out_when_mutex_never_frees(self):
        redis_client = MagicMock()
        redis_client.set.return_value = False
        manager = _distributed(redis_client, vehicle_lock_wait_seconds=0.05)

        with pytest.raises(LockTimeoutException) as exc_info:
            with manager.hold("ABC123"):
                pass

        assert exc_info.value.details["stage"] == "redis"
        # The local lock was released with the failure
        assert manager.tracked_vehicles() == 0
        with manager.hold("ABC123"):
            pass

    def test_fails_open_on_redis_error(self):
        redis_client = MagicMock()
        redis_client.set.side_effect = ConnectionError("redis down")
        manager = _distributed(redis_client)

        entered = False
        with manager.hold("ABC123"):
            entered = True

        assert entered
        redis_client.delete.assert_not_called()

    def test_fails_open_without_redis(self):
        manager = VehicleLockManager(_settings(distributed_locks_enabled=True, redis_url=None))
        with manager.hold("ABC123"):
            pass

    def test_lazy_client_ping_failure(self):
        with patch("fleet_scheduler.core.vehicle_lock.Redis") as redis_cls:
            redis_cls.from_url.return_value.ping.side_effect = ConnectionError("refused")
            manager = VehicleLockManager(
                _settings(distributed_locks_enabled=True, redis_url="redis://localhost:6390/0")
            )
            assert manager._get_redis() is None
            redis_cls.from_url.assert_called_once_with(
                "redis://localhost:6390/0", encoding="utf-8", decode_responses=True
            )

    def test_release_error_is_logged_not_raised(self, caplog):
        redis_client = MagicMock()
        redis_client.set.return_value = True
        redis_client.get.side_effect = ConnectionError("gone")
        manager = _distributed(redis_client)

        with manager.hold("ABC123"):
            pass

        assert "vehicle_lock_redis_release_failed" in caplog.text
