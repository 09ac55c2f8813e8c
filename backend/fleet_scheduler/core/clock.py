"""
Time source for the scheduler.

Services never call datetime.now() directly; they ask an injected Clock so
tests can pin and advance time.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import threading
from typing import Optional, Protocol, runtime_checkable


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, at: Optional[datetime] = None) -> None:
        self._lock = threading.Lock()
        self._now = ensure_utc(at) if at else datetime.now(timezone.utc)

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, at: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(at)

    def advance(self, delta: Optional[timedelta] = None, **kwargs: float) -> datetime:
        step = delta if delta is not None else timedelta(**kwargs)
        with self._lock:
            self._now = self._now + step
            return self._now
