"""Injectable time source. Every "now" in the engine is read through a Clock."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current naive UTC time."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.utcnow()


class FrozenClock(Clock):
    """Clock pinned to a fixed instant; moved explicitly."""

    def __init__(self, now: Optional[datetime] = None):
        self._now = now or datetime.utcnow()

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


_clock: Optional[Clock] = None


def get_clock() -> Clock:
    """Get the process-wide system clock."""
    global _clock
    if _clock is None:
        _clock = SystemClock()
    return _clock
