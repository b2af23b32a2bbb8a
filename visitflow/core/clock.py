"""Time source used for slot validity and expiry checks."""

from abc import ABC, abstractmethod
from datetime import UTC, date, datetime, timedelta, tzinfo


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Clock(ABC):
    """Supplies the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current aware UTC time."""

    def today(self, tz: tzinfo) -> date:
        """Return the current calendar day in a timezone."""
        return self.now().astimezone(tz).date()


class SystemClock(Clock):
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock(Clock):
    """Manually driven clock for tests and simulations."""

    def __init__(self, start: datetime):
        self._now = as_utc(start)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = as_utc(value)

    def advance(self, **kwargs: float) -> datetime:
        """Move the clock forward, e.g. ``advance(minutes=5)``."""
        self._now += timedelta(**kwargs)
        return self._now
