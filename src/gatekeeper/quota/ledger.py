"""
Daily usage quota per identity.

N free metered calls per identity per calendar day, unlimited while
premium. The day reset is lazy: a stored counter from an earlier date
counts as zero and is overwritten by the next recorded call, inside the
same atomic store operation that increments it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from gatekeeper.clock import Clock
from gatekeeper.store.base import AdmissionStore, QuotaState
from gatekeeper.subscription import Subscription, SubscriptionProvider

logger = logging.getLogger(__name__)


@dataclass
class QuotaVerdict:
    """Result of a read-only quota check."""

    allowed: bool
    """Whether another metered call is permitted today."""

    queries_used: int
    """Calls already recorded today."""

    queries_limit: int | None
    """Daily limit, or None when unlimited."""

    reset_time: datetime
    """Start of the next calendar day in the deployment timezone."""

    is_premium: bool = False

    @property
    def remaining(self) -> int | None:
        if self.queries_limit is None:
            return None
        return max(0, self.queries_limit - self.queries_used)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "queries_used": self.queries_used,
            "queries_limit": self.queries_limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time.isoformat(),
            "is_premium": self.is_premium,
        }


@dataclass
class RecordResult:
    """Outcome of recording one successful metered call."""

    recorded: bool
    """False when the daily limit had already been reached."""

    queries_used: int
    queries_limit: int | None
    total_queries: int
    is_premium: bool = False
    requests_count: int | None = None
    """Window count after the increment, when the window was recorded too."""

    degraded: bool = False
    """True when a store failure prevented part of the recording."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "recorded": self.recorded,
            "queries_used": self.queries_used,
            "queries_limit": self.queries_limit,
            "total_queries": self.total_queries,
            "is_premium": self.is_premium,
            "requests_count": self.requests_count,
            "degraded": self.degraded,
        }


class QuotaLedger:
    """Enforces the daily quota against an admission store."""

    def __init__(
        self,
        store: AdmissionStore,
        clock: Clock,
        daily_limit: int = 5,
        subscriptions: SubscriptionProvider | None = None,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            store: Backing admission store
            clock: Time source for the calendar day
            daily_limit: Free metered calls per identity per day
            subscriptions: Optional premium lookup
        """
        if daily_limit < 0:
            raise ValueError("daily_limit must not be negative")
        self._store = store
        self._clock = clock
        self._daily_limit = daily_limit
        self._subscriptions = subscriptions

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    async def _lookup_subscription(self, identity: str) -> Subscription | None:
        if self._subscriptions is None:
            return None
        return await self._subscriptions.get_subscription(identity)

    async def _resolve_premium(
        self,
        identity: str,
        explicit: bool | None,
        state: QuotaState | None,
    ) -> tuple[bool, bool]:
        """
        Resolve the premium flag.

        Order: explicit argument, subscription provider, stored flag.

        Returns:
            (is_premium, authoritative) where authoritative means the
            value should be persisted with the next increment
        """
        if explicit is not None:
            return explicit, True
        subscription = await self._lookup_subscription(identity)
        if subscription is not None:
            return subscription.is_active(self._clock.now()), True
        return bool(state and state.is_premium), False

    async def check(self, identity: str, *, is_premium: bool | None = None) -> QuotaVerdict:
        """
        Check the daily quota without recording anything.

        Args:
            identity: User id or network address
            is_premium: Premium flag supplied by the caller, if known

        Returns:
            QuotaVerdict
        """
        today = self._clock.today()
        state = await self._store.get_quota(identity)
        used = state.used_on(today) if state else 0
        premium, _ = await self._resolve_premium(identity, is_premium, state)
        reset_time = self._clock.next_midnight()

        if premium:
            return QuotaVerdict(True, used, None, reset_time, is_premium=True)

        return QuotaVerdict(
            allowed=used < self._daily_limit,
            queries_used=used,
            queries_limit=self._daily_limit,
            reset_time=reset_time,
        )

    async def record(self, identity: str, *, is_premium: bool | None = None) -> RecordResult:
        """
        Record one successful metered call.

        The store applies the day reset and the increment in one atomic
        operation. For free-tier identities the increment only applies
        while the day's count is below the limit, so concurrent callers
        can never push the counter past it.

        Args:
            identity: User id or network address
            is_premium: Premium flag supplied by the caller, if known

        Returns:
            RecordResult
        """
        today = self._clock.today()
        premium, persist = await self._resolve_premium(identity, is_premium, None)
        if not persist:
            stored = await self._store.get_quota(identity)
            premium = bool(stored and stored.is_premium)

        limit = None if premium else self._daily_limit
        result = await self._store.increment_quota(
            identity,
            today,
            limit=limit,
            is_premium=premium if persist else None,
        )
        state = result.state

        if not result.applied:
            logger.info(
                f"Quota exhausted for {identity}: "
                f"{state.used_on(today)}/{self._daily_limit}, call not recorded"
            )

        return RecordResult(
            recorded=result.applied,
            queries_used=state.used_on(today),
            queries_limit=limit,
            total_queries=state.total_queries,
            is_premium=premium,
        )

    async def usage_stats(self, identity: str) -> dict[str, Any] | None:
        """
        Usage summary of an identity for reporting.

        Args:
            identity: User id or network address

        Returns:
            Dict with usage figures, or None if the identity was never seen
        """
        state = await self._store.get_quota(identity)
        if state is None:
            return None

        today = self._clock.today()
        subscription = await self._lookup_subscription(identity)
        if subscription is not None:
            premium = subscription.is_active(self._clock.now())
            expires_at = subscription.premium_expires_at
        else:
            premium = state.is_premium
            expires_at = None

        used = state.used_on(today)
        limit = None if premium else self._daily_limit
        return {
            "identity": identity,
            "is_premium": premium,
            "premium_expires_at": expires_at.isoformat() if expires_at else None,
            "queries_today": used,
            "queries_limit": limit,
            "remaining": None if limit is None else max(0, limit - used),
            "total_queries": state.total_queries,
            "last_query_date": state.last_query_date.isoformat() if state.last_query_date else None,
            "reset_time": self._clock.next_midnight().isoformat(),
        }
