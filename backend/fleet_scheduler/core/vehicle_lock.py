from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Dict, Iterator, Optional

from redis import Redis

from ..monitoring.prometheus_metrics import prometheus_metrics
from .config import Settings, settings as default_settings
from .exceptions import LockTimeoutException
from .ulid_helper import generate_ulid

logger = logging.getLogger(__name__)


def _lock_key(vehicle_id: str) -> str:
    return f"vehicle:{vehicle_id}:mutex"


class VehicleLockManager:
    """
    Serializes all scheduling work on one vehicle.

    A process-local lock is always taken. When distributed locks are enabled a
    Redis mutex is taken as well so that several scheduler processes sharing a
    repository serialize on the same vehicle. Distinct vehicles never contend.
    """

    def __init__(self, config: Optional[Settings] = None, redis_client: Optional[Redis] = None):
        self.settings = config or default_settings
        self._locks: Dict[str, threading.Lock] = {}
        # Holders and waiters per vehicle; entries are dropped when this reaches zero
        self._users: Dict[str, int] = {}
        self._locks_guard = threading.Lock()
        self._redis = redis_client
        self._redis_guard = threading.Lock()

    def _namespaced_key(self, key: str) -> str:
        return f"{self.settings.lock_namespace}:lock:{key}"

    def _checkout(self, vehicle_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(vehicle_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[vehicle_id] = lock
            self._users[vehicle_id] = self._users.get(vehicle_id, 0) + 1
            return lock

    def _checkin(self, vehicle_id: str) -> None:
        with self._locks_guard:
            remaining = self._users.get(vehicle_id, 0) - 1
            if remaining > 0:
                self._users[vehicle_id] = remaining
            else:
                self._users.pop(vehicle_id, None)
                self._locks.pop(vehicle_id, None)

    def tracked_vehicles(self) -> int:
        """Number of vehicles currently held or waited on."""
        with self._locks_guard:
            return len(self._locks)

    def _get_redis(self) -> Optional[Redis]:
        if self._redis is not None:
            return self._redis
        if not self.settings.redis_url:
            return None
        with self._redis_guard:
            if self._redis is not None:
                return self._redis
            try:
                client = Redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                client.ping()
            except Exception as exc:
                logger.warning("vehicle_lock_redis_unavailable: %s", exc)
                return None
            self._redis = client
            return self._redis

    def _acquire_distributed(self, vehicle_id: str, deadline: float) -> Optional[str]:
        """
        Poll for the Redis mutex until the deadline.

        Returns the owner token, or None when Redis is unreachable (fail open).
        """
        client = self._get_redis()
        if client is None:
            prometheus_metrics.record_vehicle_lock("acquire", "redis_unavailable")
            logger.warning(
                "vehicle_lock_redis_unavailable",
                extra={"vehicle_id": vehicle_id},
            )
            return None

        key = self._namespaced_key(_lock_key(vehicle_id))
        token = generate_ulid()
        while True:
            try:
                acquired = bool(
                    client.set(key, token, nx=True, ex=self.settings.vehicle_lock_ttl_seconds)
                )
            except Exception as exc:
                prometheus_metrics.record_vehicle_lock("acquire", "error")
                logger.warning(
                    "vehicle_lock_redis_acquire_failed",
                    extra={
                        "vehicle_id": vehicle_id,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                return None
            if acquired:
                return token
            if time.monotonic() >= deadline:
                prometheus_metrics.record_vehicle_lock("acquire", "timeout")
                logger.warning(
                    "vehicle_lock_redis_timeout",
                    extra={"vehicle_id": vehicle_id},
                )
                raise LockTimeoutException(
                    vehicle_id, self.settings.vehicle_lock_wait_seconds, stage="redis"
                )
            time.sleep(self.settings.vehicle_lock_poll_interval_seconds)

    def _release_distributed(self, vehicle_id: str, token: str) -> None:
        client = self._get_redis()
        if client is None:
            prometheus_metrics.record_vehicle_lock("release", "redis_unavailable")
            return
        key = self._namespaced_key(_lock_key(vehicle_id))
        try:
            # Only the owner may delete; an expired mutex may already belong to someone else
            if client.get(key) == token:
                client.delete(key)
                prometheus_metrics.record_vehicle_lock("release", "success")
            else:
                prometheus_metrics.record_vehicle_lock("release", "not_owner")
        except Exception as exc:
            prometheus_metrics.record_vehicle_lock("release", "error")
            logger.warning(
                "vehicle_lock_redis_release_failed",
                extra={
                    "vehicle_id": vehicle_id,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )

    @contextmanager
    def hold(self, vehicle_id: str) -> Iterator[None]:
        """
        Hold the vehicle's lock for the duration of the block.

        Raises:
            LockTimeoutException: if the lock is not obtained within
                vehicle_lock_wait_seconds
        """
        wait = self.settings.vehicle_lock_wait_seconds
        started = time.monotonic()
        deadline = started + wait
        local = self._checkout(vehicle_id)

        if not local.acquire(timeout=wait):
            self._checkin(vehicle_id)
            prometheus_metrics.record_vehicle_lock("acquire", "timeout", time.monotonic() - started)
            logger.warning(
                "vehicle_lock_timeout",
                extra={"vehicle_id": vehicle_id, "waited_seconds": wait},
            )
            raise LockTimeoutException(vehicle_id, wait)

        token: Optional[str] = None
        try:
            if self.settings.distributed_locks_enabled:
                token = self._acquire_distributed(vehicle_id, deadline)
            prometheus_metrics.record_vehicle_lock("acquire", "success", time.monotonic() - started)
            yield
        finally:
            if token is not None:
                self._release_distributed(vehicle_id, token)
            local.release()
            self._checkin(vehicle_id)
