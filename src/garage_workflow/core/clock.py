"""Injectable time sources."""

from datetime import datetime, timedelta


class SystemClock:
    def now(self) -> datetime:
        return datetime.now()


class FixedClock:
    """A clock that only moves when told to. Used by tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime):
        self._now = now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now
