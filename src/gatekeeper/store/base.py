"""Abstract base class for admission stores and the records they hold."""

import ipaddress
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

# Endpoint name under which identifier-wide state (suspicion signals) lives
ANY_ENDPOINT = "*"


class IdentifierKind(str, Enum):
    """What an identifier denotes. Only used to namespace window records."""

    USER = "user"
    IP = "ip"

    @classmethod
    def infer(cls, value: str) -> "IdentifierKind":
        """Classify a raw identifier: IP addresses are ``ip``, anything else ``user``."""
        try:
            ipaddress.ip_address(value)
            return cls.IP
        except ValueError:
            return cls.USER


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class WindowKey:
    """Composite key of a window counter, minus the window start."""

    identifier: str
    identifier_type: IdentifierKind
    endpoint: str


@dataclass
class QuotaState:
    """
    Daily usage record of one identity.

    Attributes:
        identity: User id or network address
        queries_today: Metered calls on ``last_query_date``
        total_queries: Metered calls since the record was created
        last_query_date: Calendar date ``queries_today`` refers to
        is_premium: Last premium flag seen for this identity
    """

    identity: str
    queries_today: int = 0
    total_queries: int = 0
    last_query_date: date | None = None
    is_premium: bool = False

    def used_on(self, today: date) -> int:
        """Queries used on ``today``, applying the lazy day reset."""
        if self.last_query_date != today:
            return 0
        return self.queries_today

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "queries_today": self.queries_today,
            "total_queries": self.total_queries,
            "last_query_date": self.last_query_date.isoformat() if self.last_query_date else None,
            "is_premium": self.is_premium,
        }


@dataclass
class QuotaIncrement:
    """Outcome of an atomic quota increment."""

    state: QuotaState
    """State after the operation."""

    applied: bool
    """False when the limit predicate rejected the increment."""


@dataclass
class WindowRecord:
    """Request count of one identifier/endpoint pair in one fixed window."""

    identifier: str
    identifier_type: IdentifierKind
    endpoint: str
    window_start: datetime
    window_end: datetime
    requests_count: int = 0
    is_blocked: bool = False
    block_reason: str | None = None

    @property
    def key(self) -> WindowKey:
        return WindowKey(self.identifier, self.identifier_type, self.endpoint)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "identifier_type": self.identifier_type.value,
            "endpoint": self.endpoint,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "requests_count": self.requests_count,
            "is_blocked": self.is_blocked,
            "block_reason": self.block_reason,
        }


@dataclass
class BlockState:
    """
    Escalation state of an identifier/endpoint pair.

    ``version`` is bumped by every successful write and is the
    compare-and-set token. A state that was never stored has version 0.
    """

    identifier: str
    endpoint: str
    consecutive_violations: int = 0
    blocked_until: datetime | None = None
    last_violation_window: datetime | None = None
    last_seen_window: datetime | None = None
    version: int = 0

    def is_blocked(self, now: datetime) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    def last_activity(self) -> datetime | None:
        """Latest of the last seen window, last violation and block expiry."""
        moments = [
            m for m in (self.last_seen_window, self.last_violation_window, self.blocked_until) if m is not None
        ]
        return max(moments) if moments else None

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "identifier": self.identifier,
            "endpoint": self.endpoint,
            "consecutive_violations": self.consecutive_violations,
            "blocked_until": _iso(self.blocked_until),
            "last_violation_window": _iso(self.last_violation_window),
            "last_seen_window": _iso(self.last_seen_window),
            "version": self.version,
        }


class AdmissionStore(ABC):
    """
    Abstract base class for admission stores.

    Every mutating method is a single atomic operation against the shared
    backend. Implementations raise ``StoreUnavailable`` when the backend
    cannot be reached.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this backend.

        Returns:
            Backend name (e.g., 'memory', 'sql', 'redis')
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """
        Check if the backend is connected and healthy.

        Returns:
            True if connected, False otherwise
        """
        ...

    async def connect(self) -> None:
        """Open connections and create schema where needed."""
        return None

    @abstractmethod
    async def get_quota(self, identity: str) -> QuotaState | None:
        """
        Load the quota record of an identity.

        Args:
            identity: User id or network address

        Returns:
            QuotaState, or None if the identity was never recorded
        """
        ...

    @abstractmethod
    async def increment_quota(
        self,
        identity: str,
        today: date,
        limit: int | None = None,
        is_premium: bool | None = None,
    ) -> QuotaIncrement:
        """
        Atomically reset-if-new-day and increment the daily counter.

        When ``last_query_date != today`` the counter restarts at 1 and the
        date moves to ``today``. ``total_queries`` always grows with an
        applied increment.

        Args:
            identity: User id or network address
            today: Current calendar date in the deployment timezone
            limit: Only apply when the (reset-aware) count is below this
            is_premium: Premium flag to persist alongside, if known

        Returns:
            QuotaIncrement with the resulting state
        """
        ...

    @abstractmethod
    async def get_window(self, key: WindowKey, window_start: datetime) -> WindowRecord | None:
        """
        Point lookup of a window record.

        Args:
            key: Identifier/endpoint key
            window_start: Start of the window

        Returns:
            WindowRecord, or None if no request was counted in that window
        """
        ...

    @abstractmethod
    async def increment_window(
        self,
        key: WindowKey,
        window_start: datetime,
        window_end: datetime,
    ) -> WindowRecord:
        """
        Atomically create-or-increment a window record.

        Args:
            key: Identifier/endpoint key
            window_start: Start of the live window
            window_end: End of the live window

        Returns:
            WindowRecord after the increment
        """
        ...

    @abstractmethod
    async def mark_window_blocked(
        self,
        key: WindowKey,
        window_start: datetime,
        window_end: datetime,
        reason: str,
    ) -> None:
        """Flag a window record as blocked, creating it if absent."""
        ...

    @abstractmethod
    async def list_windows(
        self,
        identifier: str | None = None,
        blocked_only: bool = False,
        limit: int = 100,
    ) -> list[WindowRecord]:
        """
        List window records for reporting, newest first.

        Args:
            identifier: Restrict to one identifier
            blocked_only: Only records flagged as blocked
            limit: Maximum number of records

        Returns:
            List of WindowRecord
        """
        ...

    @abstractmethod
    async def prune_windows(self, before: datetime) -> int:
        """
        Delete window records that ended before a cutoff.

        Args:
            before: Cutoff time

        Returns:
            Number of records deleted
        """
        ...

    @abstractmethod
    async def prune_blocks(self, before: datetime) -> int:
        """
        Delete escalation states with no activity since a cutoff.

        A state qualifies when its last seen window, last violation window
        and block expiry all lie before ``before``. Such a state is no
        longer blocking and would be reset on its next evaluation.

        Args:
            before: Cutoff time

        Returns:
            Number of states deleted
        """
        ...

    @abstractmethod
    async def get_block(self, identifier: str, endpoint: str) -> BlockState | None:
        """Load escalation state, or None if none was stored."""
        ...

    @abstractmethod
    async def compare_and_set_block(self, state: BlockState, expected_version: int) -> bool:
        """
        Write escalation state if the stored version still matches.

        Args:
            state: New state (its ``version`` field is ignored)
            expected_version: Version read before computing ``state``;
                0 means "only if absent"

        Returns:
            True if written, False if another writer got there first
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the store connection."""
        ...

    async def health_check(self) -> dict[str, Any]:
        """
        Perform a health check on the store backend.

        Returns:
            Dict with health status info
        """
        return {
            "backend": self.name,
            "connected": self.is_connected,
        }
