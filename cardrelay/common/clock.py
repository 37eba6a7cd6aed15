"""Clock abstraction so scheduling and backoff can run on virtual time in tests."""

from datetime import datetime, timedelta, timezone
from typing import Protocol


def as_utc(dt: datetime | None) -> datetime | None:
    """Make a naive datetime UTC-aware (SQLite drops tzinfo on read)."""

    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class VirtualClock:
    """Manually advanced clock; pairs with `TaskScheduler.run_due()`."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = as_utc(start) or datetime(2026, 1, 4, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = as_utc(moment)
