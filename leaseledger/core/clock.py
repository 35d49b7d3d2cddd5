"""
Clock port.

Every calendar decision in the rent engine (due dates, overdue detection,
lease expiry) goes through a ``Clock`` so tests can pin time. Calendar dates
are taken in the single deployment timezone from ``settings.timezone``.
"""

import time
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone

import pytz

from leaseledger.core.config import settings


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current instant, timezone-aware UTC."""

    @abstractmethod
    def monotonic(self) -> float:
        """Monotonic seconds, used for deadlines."""

    def today(self) -> date:
        """Current calendar date in the deployment timezone."""
        zone = pytz.timezone(settings.timezone)
        return self.now().astimezone(zone).date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class FixedClock(Clock):
    """Clock pinned to a given instant; ``advance`` moves it forward."""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._now = instant
        self._mono = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, **kwargs) -> None:
        delta = timedelta(**kwargs)
        self._now += delta
        self._mono += delta.total_seconds()


class Deadline:
    """Absolute monotonic deadline carried by a request or a job run."""

    def __init__(self, seconds: float | None, clock: Clock):
        self._clock = clock
        self._expires = None if seconds is None else clock.monotonic() + seconds

    @property
    def remaining(self) -> float | None:
        if self._expires is None:
            return None
        return max(0.0, self._expires - self._clock.monotonic())

    @property
    def expired(self) -> bool:
        return self._expires is not None and self._clock.monotonic() >= self._expires


_system_clock = SystemClock()


def get_clock() -> Clock:
    return _system_clock
