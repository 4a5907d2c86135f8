"""
Admission facade used by the request-handling layer.

``AdmissionController`` composes the adaptive gate, the window counter and
the daily quota ledger into one decision per inbound call, and records
successful calls afterwards. Every store round trip is bounded by a short
timeout so that admission control never becomes the slowest part of the
request path.
"""

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, TypeVar

from gatekeeper.clock import Clock, SystemClock
from gatekeeper.config import settings as app_settings
from gatekeeper.errors import InvalidIdentity, StoreUnavailable
from gatekeeper.quota.gate import (
    AdaptiveGate,
    Decision,
    GatePolicy,
    GateVerdict,
    Severity,
    load_endpoint_policies,
)
from gatekeeper.quota.ledger import QuotaLedger, QuotaVerdict, RecordResult
from gatekeeper.quota.window import WindowCounter
from gatekeeper.store.base import (
    ANY_ENDPOINT,
    AdmissionStore,
    BlockState,
    IdentifierKind,
    WindowRecord,
)
from gatekeeper.subscription import SubscriptionProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_IDENTITY_LENGTH = 255
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class AdmissionDecision(str, Enum):
    """Combined admission decision."""

    ALLOW = "allow"
    THROTTLED = "throttled"  # Served but flagged
    DENY_QUOTA = "deny_quota"
    DENY_RATE = "deny_rate"
    DENY_BLOCKED = "deny_blocked"


@dataclass
class AdmissionResult:
    """Outcome of an admission evaluation."""

    decision: AdmissionDecision
    identity: str
    endpoint: str
    queries_used: int | None = None
    """Metered calls used today (None when the quota was not consulted)."""

    queries_limit: int | None = None
    """Daily limit (None when unlimited or not consulted)."""

    reset_time: datetime | None = None
    """When the daily quota resets."""

    retry_after_seconds: int | None = None
    requests_count: int = 0
    """Projected window count including this request."""

    message: str = ""
    is_premium: bool = False
    degraded: bool = False
    """True when a store failure was absorbed by the fail-open policy."""

    @property
    def allowed(self) -> bool:
        return self.decision in (AdmissionDecision.ALLOW, AdmissionDecision.THROTTLED)

    @property
    def remaining(self) -> int | None:
        if self.queries_limit is None or self.queries_used is None:
            return None
        return max(0, self.queries_limit - self.queries_used)

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "allowed": self.allowed,
            "identity": self.identity,
            "endpoint": self.endpoint,
            "queries_used": self.queries_used,
            "queries_limit": self.queries_limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time.isoformat() if self.reset_time else None,
            "retry_after_seconds": self.retry_after_seconds,
            "requests_count": self.requests_count,
            "message": self.message,
            "is_premium": self.is_premium,
            "degraded": self.degraded,
        }

    def headers(self) -> dict[str, str]:
        """Rate limit response headers."""
        headers: dict[str, str] = {}
        if self.queries_limit is not None:
            headers["X-RateLimit-Limit"] = str(self.queries_limit)
            headers["X-RateLimit-Remaining"] = str(self.remaining)
        if self.reset_time is not None:
            headers["X-RateLimit-Reset"] = str(int(self.reset_time.timestamp()))
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


def validate_identity(identity: Any) -> str:
    """
    Validate an identity key.

    Raises:
        InvalidIdentity: If the identity is empty, too long or contains
            control characters
    """
    if not isinstance(identity, str) or not identity.strip():
        raise InvalidIdentity("Identity must be a non-empty string")
    if len(identity) > MAX_IDENTITY_LENGTH:
        raise InvalidIdentity(f"Identity exceeds {MAX_IDENTITY_LENGTH} characters")
    if _CONTROL_CHARS.search(identity):
        raise InvalidIdentity("Identity contains control characters")
    return identity


def _validate_endpoint(endpoint: str) -> str:
    if not endpoint or endpoint == ANY_ENDPOINT:
        raise ValueError(f"Invalid endpoint name: {endpoint!r}")
    return endpoint


class AdmissionController:
    """
    Single entry point for admission decisions.

    Failure policy:
    - Gate (window counts, blocks): always fails open. A limiter outage
      must not deny everyone.
    - Quota: ``quota_fail_open`` decides. Fail open admits the call with a
      logged warning; fail closed raises ``StoreUnavailable``.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        counter: WindowCounter,
        gate: AdaptiveGate,
        clock: Clock,
        store_timeout_ms: int = 200,
        quota_fail_open: bool = True,
    ) -> None:
        """
        Initialize the controller.

        Args:
            ledger: Daily quota ledger
            counter: Window counter
            gate: Adaptive gate
            clock: Time source shared with the components
            store_timeout_ms: Upper bound on each store interaction
            quota_fail_open: Admit calls when the quota store fails
        """
        self._ledger = ledger
        self._counter = counter
        self._gate = gate
        self._clock = clock
        self._timeout = store_timeout_ms / 1000
        self._quota_fail_open = quota_fail_open

    @classmethod
    def from_settings(
        cls,
        store: AdmissionStore,
        settings: Any = None,
        clock: Clock | None = None,
        subscriptions: SubscriptionProvider | None = None,
    ) -> "AdmissionController":
        """Build a controller and its components from application settings."""
        settings = settings or app_settings
        clock = clock or SystemClock(settings.timezone)
        counter = WindowCounter(
            store,
            clock,
            window_seconds=settings.window_seconds,
            skew_tolerance_seconds=settings.clock_skew_tolerance_seconds,
        )
        endpoint_policies = (
            load_endpoint_policies(settings.gate_policy_path) if settings.gate_policy_path else {}
        )
        gate = AdaptiveGate(
            store,
            counter,
            clock,
            policy=GatePolicy.from_settings(settings),
            endpoint_policies=endpoint_policies,
        )
        ledger = QuotaLedger(store, clock, settings.daily_limit, subscriptions=subscriptions)

        if not settings.quota_fail_open:
            logger.info("Quota configured to fail closed on store errors")

        return cls(
            ledger,
            counter,
            gate,
            clock,
            store_timeout_ms=settings.store_timeout_ms,
            quota_fail_open=settings.quota_fail_open,
        )

    @property
    def ledger(self) -> QuotaLedger:
        return self._ledger

    @property
    def counter(self) -> WindowCounter:
        return self._counter

    @property
    def gate(self) -> AdaptiveGate:
        return self._gate

    async def _bounded(self, awaitable: Awaitable[T], what: str) -> T:
        """Await a store interaction under the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(
                f"{what} timed out after {int(self._timeout * 1000)}ms"
            ) from e

    def _key(self, identity: str, endpoint: str, identifier_kind: IdentifierKind | str | None):
        kind = IdentifierKind(identifier_kind) if identifier_kind else None
        return WindowCounter.key(identity, _validate_endpoint(endpoint), kind)

    async def evaluate_admission(
        self,
        identity: str,
        identifier_kind: IdentifierKind | str | None = None,
        endpoint: str = "default",
        *,
        is_premium: bool | None = None,
    ) -> AdmissionResult:
        """
        Decide whether a call may proceed. Read-only.

        Args:
            identity: User id or network address
            identifier_kind: ``user`` or ``ip`` (inferred when omitted)
            endpoint: Target endpoint name
            is_premium: Premium flag supplied by the caller, if known

        Returns:
            AdmissionResult; denials are results, not exceptions

        Raises:
            InvalidIdentity: For an empty or malformed identity
            StoreUnavailable: When the quota store fails and the quota
                is configured to fail closed
        """
        identity = validate_identity(identity)
        key = self._key(identity, endpoint, identifier_kind)
        now = self._clock.now()

        try:
            verdict = await self._bounded(self._gate.evaluate(key, now), "Gate evaluation")
        except StoreUnavailable as e:
            logger.warning(f"Gate timed out, allowing {identity}: {e}")
            _, window_end = self._counter.bounds(now)
            verdict = GateVerdict(Decision.ALLOW, 0, window_end, degraded=True)

        if verdict.decision == Decision.BLOCKED:
            return self._blocked_result(identity, endpoint, verdict)

        try:
            quota = await self._bounded(
                self._ledger.check(identity, is_premium=is_premium), "Quota check"
            )
        except StoreUnavailable as e:
            if not self._quota_fail_open:
                logger.error(f"Quota store unavailable, denying {identity}: {e}")
                raise
            logger.warning(f"Quota store unavailable, failing open for {identity}: {e}")
            return AdmissionResult(
                decision=self._gate_decision(verdict),
                identity=identity,
                endpoint=endpoint,
                queries_limit=self._ledger.daily_limit,
                reset_time=self._clock.next_midnight(),
                retry_after_seconds=verdict.retry_after,
                requests_count=verdict.requests_count,
                message="Admitted without quota check",
                degraded=True,
            )

        if not quota.allowed:
            return self._quota_denied(identity, endpoint, quota, verdict, now)

        decision = self._gate_decision(verdict)
        return AdmissionResult(
            decision=decision,
            identity=identity,
            endpoint=endpoint,
            queries_used=quota.queries_used,
            queries_limit=quota.queries_limit,
            reset_time=quota.reset_time,
            retry_after_seconds=verdict.retry_after if decision == AdmissionDecision.THROTTLED else None,
            requests_count=verdict.requests_count,
            message=verdict.reason or "",
            is_premium=quota.is_premium,
            degraded=verdict.degraded,
        )

    @staticmethod
    def _gate_decision(verdict: GateVerdict) -> AdmissionDecision:
        if verdict.decision == Decision.THROTTLED:
            return AdmissionDecision.THROTTLED
        return AdmissionDecision.ALLOW

    def _blocked_result(self, identity: str, endpoint: str, verdict: GateVerdict) -> AdmissionResult:
        policy = self._gate.policy_for(endpoint)
        decision = (
            AdmissionDecision.DENY_RATE
            if verdict.requests_count > policy.hard_limit
            else AdmissionDecision.DENY_BLOCKED
        )
        return AdmissionResult(
            decision=decision,
            identity=identity,
            endpoint=endpoint,
            retry_after_seconds=verdict.retry_after,
            requests_count=verdict.requests_count,
            message=verdict.reason or "Too many requests",
        )

    def _quota_denied(
        self,
        identity: str,
        endpoint: str,
        quota: QuotaVerdict,
        verdict: GateVerdict,
        now: datetime,
    ) -> AdmissionResult:
        retry_after = max(1, math.ceil((quota.reset_time - now).total_seconds()))
        return AdmissionResult(
            decision=AdmissionDecision.DENY_QUOTA,
            identity=identity,
            endpoint=endpoint,
            queries_used=quota.queries_used,
            queries_limit=quota.queries_limit,
            reset_time=quota.reset_time,
            retry_after_seconds=retry_after,
            requests_count=verdict.requests_count,
            message=(
                f"Daily limit reached ({quota.queries_used}/{quota.queries_limit}). "
                f"Resets at {quota.reset_time.isoformat()}"
            ),
            degraded=verdict.degraded,
        )

    async def record_success(
        self,
        identity: str,
        endpoint: str = "default",
        *,
        identifier_kind: IdentifierKind | str | None = None,
        is_premium: bool | None = None,
    ) -> RecordResult:
        """
        Record a gated call that completed successfully.

        Failed downstream calls must not be recorded: only successful
        metered calls count against the quota.

        Args:
            identity: User id or network address
            endpoint: Endpoint the call was made to
            identifier_kind: ``user`` or ``ip`` (inferred when omitted)
            is_premium: Premium flag supplied by the caller, if known

        Returns:
            RecordResult with the quota and window counts
        """
        identity = validate_identity(identity)
        key = self._key(identity, endpoint, identifier_kind)

        try:
            result = await self._bounded(
                self._ledger.record(identity, is_premium=is_premium), "Quota record"
            )
        except StoreUnavailable as e:
            logger.error(f"Failed to record quota usage for {identity}: {e}")
            result = RecordResult(
                recorded=False,
                queries_used=0,
                queries_limit=self._ledger.daily_limit,
                total_queries=0,
                degraded=True,
            )

        try:
            count = await self._bounded(self._counter.increment(key), "Window increment")
            result.requests_count = count.count
        except StoreUnavailable as e:
            logger.error(f"Failed to count request for {identity} on {endpoint}: {e}")
            result.degraded = True

        return result

    async def report_suspicious_signal(
        self,
        identifier: str,
        severity: Severity | str,
    ) -> BlockState | None:
        """
        Feed a suspicious activity signal into the gate.

        Args:
            identifier: Offending identifier
            severity: ``low``, ``medium`` or ``high``

        Returns:
            Resulting identifier-wide state, or None if the store failed
        """
        identifier = validate_identity(identifier)
        severity = Severity(severity)
        try:
            return await self._bounded(
                self._gate.report_suspicious(identifier, severity), "Suspicion report"
            )
        except StoreUnavailable as e:
            logger.error(f"Failed to record suspicion signal for {identifier}: {e}")
            return None

    async def usage(self, identity: str) -> dict[str, Any] | None:
        """Usage summary of an identity."""
        identity = validate_identity(identity)
        return await self._bounded(self._ledger.usage_stats(identity), "Usage lookup")

    async def block_status(self, identifier: str, endpoint: str | None = None) -> dict[str, Any]:
        """Escalation state of an identifier."""
        identifier = validate_identity(identifier)
        return await self._bounded(self._gate.block_status(identifier, endpoint), "Block lookup")

    async def list_windows(
        self,
        identifier: str | None = None,
        blocked_only: bool = False,
        limit: int = 100,
    ) -> list[WindowRecord]:
        """Recent window records, newest first."""
        return await self._bounded(
            self._counter.recent(identifier, blocked_only=blocked_only, limit=limit),
            "Window listing",
        )
