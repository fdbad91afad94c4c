from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Source of the current time. All times are timezone-aware UTC."""

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)


class FakeClock(Clock):
    """Clock that only moves when advanced. Used by tests and simulations."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2022, 1, 1, tzinfo=timezone.utc)

    def utcnow(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now += delta
        return self._now
