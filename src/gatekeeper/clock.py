"""Clock abstraction used for window and calendar-day arithmetic."""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


class Clock(ABC):
    """
    Source of the current time in the deployment timezone.

    Components never call ``datetime.now()`` directly so that tests can
    drive day and window boundaries deterministically.
    """

    @property
    @abstractmethod
    def tz(self) -> ZoneInfo:
        """Deployment timezone."""
        ...

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware time."""
        ...

    def today(self) -> date:
        """Current calendar date in the deployment timezone."""
        return self.now().astimezone(self.tz).date()

    def next_midnight(self) -> datetime:
        """Start of the next calendar day in the deployment timezone."""
        tomorrow = self.today() + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=self.tz)

    def timestamp(self) -> float:
        """Current UNIX time in seconds."""
        return self.now().timestamp()


class SystemClock(Clock):
    """Wall clock in a configured timezone."""

    def __init__(self, tz_name: str = "UTC") -> None:
        self._tz = ZoneInfo(tz_name)

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    def now(self) -> datetime:
        return datetime.now(self._tz)


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Used by tests and by replay tooling.
    """

    def __init__(
        self,
        start: datetime | None = None,
        tz_name: str = "UTC",
    ) -> None:
        """
        Initialize manual clock.

        Args:
            start: Initial time (naive values are taken as UTC)
            tz_name: Deployment timezone name
        """
        self._tz = ZoneInfo(tz_name)
        if start is None:
            start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        elif start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start.astimezone(self._tz)

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        """Jump to an absolute time."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        self._now = value.astimezone(self._tz)

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        """
        Move the clock forward.

        Args:
            seconds: Seconds to add
            **kwargs: Extra ``timedelta`` arguments (minutes, hours, days)

        Returns:
            The new current time
        """
        self._now = self._now + timedelta(seconds=seconds, **kwargs)
        return self._now
