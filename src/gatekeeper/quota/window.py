"""Fixed-window request counting per identifier and endpoint.

Windows are aligned to the UNIX epoch and do not slide: the counter
restarts at each boundary. This is a fixed-window approximation, so a
burst straddling a boundary can momentarily reach twice the nominal rate.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from gatekeeper.clock import Clock
from gatekeeper.errors import ClockSkew
from gatekeeper.store.base import (
    AdmissionStore,
    IdentifierKind,
    WindowKey,
    WindowRecord,
    to_utc,
)

logger = logging.getLogger(__name__)


@dataclass
class WindowCount:
    """Count of one identifier/endpoint pair in one window."""

    count: int
    window_start: datetime
    window_end: datetime
    is_blocked: bool = False

    def seconds_remaining(self, now: datetime) -> int:
        """Whole seconds until the window closes (at least 1)."""
        remaining = (self.window_end - to_utc(now)).total_seconds()
        return max(1, int(remaining + 0.999))


class WindowCounter:
    """Counts requests per (identifier, endpoint) in fixed windows."""

    def __init__(
        self,
        store: AdmissionStore,
        clock: Clock,
        window_seconds: int = 3600,
        skew_tolerance_seconds: int = 300,
    ) -> None:
        """
        Initialize the counter.

        Args:
            store: Backing admission store
            clock: Time source
            window_seconds: Window length
            skew_tolerance_seconds: How far in the future a stored window
                may start before it is distrusted
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._store = store
        self._clock = clock
        self._window = timedelta(seconds=window_seconds)
        self._window_seconds = window_seconds
        self._skew_tolerance = timedelta(seconds=skew_tolerance_seconds)

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    @staticmethod
    def key(
        identifier: str,
        endpoint: str,
        identifier_type: IdentifierKind | None = None,
    ) -> WindowKey:
        """Build a window key, inferring the identifier kind if omitted."""
        kind = identifier_type or IdentifierKind.infer(identifier)
        return WindowKey(identifier=identifier, identifier_type=kind, endpoint=endpoint)

    def bounds(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Start and end of the window containing ``now``."""
        moment = to_utc(now or self._clock.now())
        epoch = int(moment.timestamp())
        start = datetime.fromtimestamp(epoch - epoch % self._window_seconds, tz=timezone.utc)
        return start, start + self._window

    def _check_skew(self, record: WindowRecord, now: datetime) -> None:
        if record.window_end <= record.window_start:
            raise ClockSkew(
                f"Window for {record.identifier}/{record.endpoint} ends "
                f"({record.window_end.isoformat()}) before it starts "
                f"({record.window_start.isoformat()})"
            )
        if record.window_start > to_utc(now) + self._skew_tolerance:
            raise ClockSkew(
                f"Window for {record.identifier}/{record.endpoint} starts in the "
                f"future ({record.window_start.isoformat()})"
            )

    def _trusted_count(self, record: WindowRecord | None, now: datetime) -> tuple[int, bool]:
        """Count and blocked flag of a record, or zeroes if it cannot be trusted."""
        if record is None:
            return 0, False
        try:
            self._check_skew(record, now)
        except ClockSkew as e:
            logger.warning(f"Treating window record as expired: {e}")
            return 0, False
        return record.requests_count, record.is_blocked

    async def increment(self, key: WindowKey, now: datetime | None = None) -> WindowCount:
        """
        Atomically count one request in the live window.

        A request after the previous window ended lands in a fresh record
        and is counted as 1.

        Args:
            key: Identifier/endpoint key
            now: Evaluation time (defaults to the clock)

        Returns:
            WindowCount with the post-increment count
        """
        moment = now or self._clock.now()
        start, end = self.bounds(moment)
        record = await self._store.increment_window(key, start, end)
        count, blocked = self._trusted_count(record, moment)
        # An untrusted record still holds this request
        return WindowCount(max(count, 1), start, end, blocked)

    async def peek(self, key: WindowKey, now: datetime | None = None) -> WindowCount:
        """
        Read the live window count without incrementing it.

        Args:
            key: Identifier/endpoint key
            now: Evaluation time (defaults to the clock)

        Returns:
            WindowCount, zero if nothing was counted yet
        """
        moment = now or self._clock.now()
        start, end = self.bounds(moment)
        record = await self._store.get_window(key, start)
        count, blocked = self._trusted_count(record, moment)
        return WindowCount(count, start, end, blocked)

    async def previous(self, key: WindowKey, now: datetime | None = None) -> WindowCount:
        """Read the count of the window immediately before the live one."""
        moment = now or self._clock.now()
        start, _ = self.bounds(moment)
        prev_start = start - self._window
        record = await self._store.get_window(key, prev_start)
        count, blocked = self._trusted_count(record, moment)
        return WindowCount(count, prev_start, start, blocked)

    async def mark_blocked(self, key: WindowKey, reason: str, now: datetime | None = None) -> None:
        """Flag the live window record as blocked for reporting."""
        start, end = self.bounds(now or self._clock.now())
        await self._store.mark_window_blocked(key, start, end, reason)

    async def recent(
        self,
        identifier: str | None = None,
        blocked_only: bool = False,
        limit: int = 100,
    ) -> list[WindowRecord]:
        """Recent window records for reporting, newest first."""
        return await self._store.list_windows(identifier, blocked_only=blocked_only, limit=limit)
