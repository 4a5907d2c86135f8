"""
Adaptive escalation on top of window counts.

Per (identifier, endpoint) the gate moves between three states:

- Normal: the pending request keeps the window count at or below
  ``base_limit``.
- Throttled: the count is above ``base_limit`` but at most ``hard_limit``.
  The request may still be served; one violation is counted per window.
- Blocked: the count would exceed ``hard_limit``, or the count is above
  ``base_limit`` while the violation count is at ``escalation_threshold``
  or more. The block lasts
  ``base_block_seconds * backoff_multiplier ** violations`` (capped) and
  never ends earlier than a block already in place.

Violations reset on the first request of a new window once a full window
has completed after the last block with no violation in it.

Suspicion signals reported by input validation accumulate on an
identifier-wide state that every endpoint consults, so a severe anomaly
blocks the caller everywhere at once.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from gatekeeper.clock import Clock
from gatekeeper.errors import StoreUnavailable
from gatekeeper.quota.window import WindowCount, WindowCounter
from gatekeeper.store.base import ANY_ENDPOINT, AdmissionStore, BlockState, WindowKey

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Gate decision for a pending request."""

    ALLOW = "allow"
    THROTTLED = "throttled"  # Served but flagged
    BLOCKED = "blocked"


class Severity(str, Enum):
    """Severity of a suspicious activity signal."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"  # Blocks immediately


@dataclass
class GatePolicy:
    """
    Thresholds and backoff of the adaptive gate.

    Counts are per window of the WindowCounter.
    """

    base_limit: int = 100
    hard_limit: int = 200
    escalation_threshold: int = 3
    base_block_seconds: int = 60
    backoff_multiplier: float = 2.0
    max_block_seconds: int = 86400

    def __post_init__(self) -> None:
        if self.base_limit < 0:
            raise ValueError("base_limit must not be negative")
        if self.hard_limit < self.base_limit:
            raise ValueError("hard_limit must be at least base_limit")
        if self.escalation_threshold < 1:
            raise ValueError("escalation_threshold must be at least 1")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    def block_duration(self, violations: int) -> float:
        """Block length in seconds after ``violations`` consecutive violations."""
        try:
            duration = self.base_block_seconds * self.backoff_multiplier ** violations
        except OverflowError:
            duration = float(self.max_block_seconds)
        return float(min(duration, self.max_block_seconds))

    def severity_weight(self, severity: Severity) -> int:
        """Violations a suspicion signal adds."""
        if severity == Severity.HIGH:
            return self.escalation_threshold
        if severity == Severity.MEDIUM:
            return 2
        return 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatePolicy:
        return cls(
            base_limit=data.get("base_limit", 100),
            hard_limit=data.get("hard_limit", 200),
            escalation_threshold=data.get("escalation_threshold", 3),
            base_block_seconds=data.get("base_block_seconds", 60),
            backoff_multiplier=data.get("backoff_multiplier", 2.0),
            max_block_seconds=data.get("max_block_seconds", 86400),
        )

    @classmethod
    def from_settings(cls, settings: Any) -> GatePolicy:
        return cls(
            base_limit=settings.base_limit,
            hard_limit=settings.hard_limit,
            escalation_threshold=settings.escalation_threshold,
            base_block_seconds=settings.base_block_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_block_seconds=settings.max_block_seconds,
        )


def load_endpoint_policies(path: str | Path) -> dict[str, GatePolicy]:
    """
    Load per-endpoint policy overrides from a JSON file.

    The file maps endpoint names to policy dicts, e.g.
    ``{"improve": {"base_limit": 10, "hard_limit": 20}}``.

    Args:
        path: JSON file path

    Returns:
        Mapping of endpoint to GatePolicy (empty if the file is missing)
    """
    policy_path = Path(path)
    if not policy_path.exists():
        logger.warning(f"Gate policy file {policy_path} not found, using defaults")
        return {}

    with open(policy_path) as f:
        data = json.load(f)

    policies = {endpoint: GatePolicy.from_dict(raw) for endpoint, raw in data.items()}
    logger.info(f"Loaded {len(policies)} endpoint gate policies from {policy_path}")
    return policies


@dataclass
class GateVerdict:
    """Result of a gate evaluation."""

    decision: Decision
    """ALLOW, THROTTLED or BLOCKED."""

    requests_count: int
    """Projected window count including the pending request."""

    window_end: datetime
    """When the live window closes."""

    retry_after: int | None = None
    """Seconds until the block lifts or the window closes (when not ALLOW)."""

    reason: str | None = None
    """Human-readable reason."""

    consecutive_violations: int = 0
    blocked_until: datetime | None = None

    degraded: bool = False
    """True when the store failed and the gate let the request through."""

    @property
    def allowed(self) -> bool:
        return self.decision != Decision.BLOCKED

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "requests_count": self.requests_count,
            "window_end": self.window_end.isoformat(),
            "retry_after": self.retry_after,
            "reason": self.reason,
            "consecutive_violations": self.consecutive_violations,
            "blocked_until": self.blocked_until.isoformat() if self.blocked_until else None,
            "degraded": self.degraded,
        }


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds()))


class AdaptiveGate:
    """
    Escalating admission gate per (identifier, endpoint).

    Block state is updated with compare-and-set on its version, retried a
    bounded number of times when another request wins the race.
    """

    def __init__(
        self,
        store: AdmissionStore,
        counter: WindowCounter,
        clock: Clock,
        policy: GatePolicy | None = None,
        endpoint_policies: dict[str, GatePolicy] | None = None,
        max_retries: int = 3,
    ) -> None:
        """
        Initialize the gate.

        Args:
            store: Backing admission store
            counter: Window counter sharing the same store
            clock: Time source
            policy: Default policy
            endpoint_policies: Per-endpoint overrides
            max_retries: Compare-and-set attempts per state change
        """
        self._store = store
        self._counter = counter
        self._clock = clock
        self._policy = policy or GatePolicy()
        self._endpoint_policies = dict(endpoint_policies or {})
        self._max_retries = max(1, max_retries)

    @property
    def policy(self) -> GatePolicy:
        return self._policy

    def policy_for(self, endpoint: str) -> GatePolicy:
        return self._endpoint_policies.get(endpoint, self._policy)

    def _wide_is_stale(self, state: BlockState, window_start: datetime) -> bool:
        """
        True when identifier-wide suspicion should no longer count.

        That is the case once a full window has completed after the last
        signal and after the last block with no new signal in it.
        """
        previous_start = window_start - timedelta(seconds=self._counter.window_seconds)
        if state.last_violation_window is not None and state.last_violation_window >= previous_start:
            return False
        if state.blocked_until is not None and state.blocked_until > previous_start:
            return False
        return True

    def _blocked_verdict(
        self,
        state: BlockState,
        now: datetime,
        count: WindowCount,
        reason: str,
        violations: int | None = None,
    ) -> GateVerdict:
        return GateVerdict(
            decision=Decision.BLOCKED,
            requests_count=count.count + 1,
            window_end=count.window_end,
            retry_after=_seconds_until(state.blocked_until, now),
            reason=reason,
            consecutive_violations=(
                state.consecutive_violations if violations is None else violations
            ),
            blocked_until=state.blocked_until,
        )

    async def evaluate(self, key: WindowKey, now: datetime | None = None) -> GateVerdict:
        """
        Decide on a pending request without counting it.

        Store failures degrade to ALLOW so that a limiter outage never
        turns into a denial of service.

        Args:
            key: Identifier/endpoint key
            now: Evaluation time (defaults to the clock)

        Returns:
            GateVerdict
        """
        moment = now or self._clock.now()
        try:
            return await self._evaluate(key, moment)
        except StoreUnavailable as e:
            _, window_end = self._counter.bounds(moment)
            logger.warning(f"Gate store unavailable, allowing {key.identifier}: {e}")
            return GateVerdict(
                decision=Decision.ALLOW,
                requests_count=0,
                window_end=window_end,
                reason="Rate limiter unavailable",
                degraded=True,
            )

    async def _evaluate(self, key: WindowKey, now: datetime) -> GateVerdict:
        policy = self.policy_for(key.endpoint)
        count = await self._counter.peek(key, now)
        window_start = count.window_start
        projected = count.count + 1

        wide = await self._store.get_block(key.identifier, ANY_ENDPOINT)
        wide_violations = 0
        if wide is not None:
            if wide.is_blocked(now):
                return self._blocked_verdict(wide, now, count, "Blocked for suspicious activity")
            if not self._wide_is_stale(wide, window_start):
                wide_violations = wide.consecutive_violations

        verdict: GateVerdict | None = None
        for _ in range(self._max_retries):
            stored = await self._store.get_block(key.identifier, key.endpoint)
            state = stored or BlockState(identifier=key.identifier, endpoint=key.endpoint)

            if state.is_blocked(now):
                return self._blocked_verdict(
                    state, now, count, "Temporarily blocked after repeated rate limit violations"
                )

            new_state = replace(state)
            changed = False

            if state.last_seen_window != window_start:
                if state.consecutive_violations > 0 and await self._completed_clean_window(
                    key, state, now, policy
                ):
                    logger.info(
                        f"Resetting {state.consecutive_violations} violations for "
                        f"{key.identifier} on {key.endpoint}"
                    )
                    new_state.consecutive_violations = 0
                new_state.last_seen_window = window_start
                changed = True

            newly_blocked = False
            if projected <= policy.base_limit:
                verdict = GateVerdict(
                    decision=Decision.ALLOW,
                    requests_count=projected,
                    window_end=count.window_end,
                    consecutive_violations=new_state.consecutive_violations,
                )
            else:
                new_violation = state.last_violation_window != window_start
                if new_violation:
                    new_state.consecutive_violations += 1
                    new_state.last_violation_window = window_start
                    changed = True

                total = new_state.consecutive_violations + wide_violations
                over_hard = projected > policy.hard_limit
                # Holds until a clean window resets the violations
                escalated = total >= policy.escalation_threshold

                if over_hard or escalated:
                    until = now + timedelta(seconds=policy.block_duration(total))
                    if state.blocked_until is not None and until < state.blocked_until:
                        until = state.blocked_until
                    new_state.blocked_until = until
                    changed = True
                    newly_blocked = True
                    reason = (
                        f"Rate limit exceeded: {projected}/{policy.hard_limit} requests this window"
                        if over_hard
                        else f"Blocked after {total} consecutive violations"
                    )
                    verdict = self._blocked_verdict(new_state, now, count, reason, total)
                else:
                    verdict = GateVerdict(
                        decision=Decision.THROTTLED,
                        requests_count=projected,
                        window_end=count.window_end,
                        retry_after=count.seconds_remaining(now),
                        reason=f"Rate limit warning: {projected}/{policy.base_limit} requests this window",
                        consecutive_violations=total,
                    )

            if not changed:
                return verdict

            if await self._store.compare_and_set_block(new_state, state.version):
                if newly_blocked:
                    logger.warning(
                        f"Blocking {key.identifier} on {key.endpoint} until "
                        f"{new_state.blocked_until.isoformat()}: {verdict.reason}"
                    )
                    try:
                        await self._counter.mark_blocked(key, verdict.reason, now)
                    except StoreUnavailable as e:
                        # The block itself is stored; only the report flag is missing
                        logger.warning(f"Could not flag blocked window for {key.identifier}: {e}")
                return verdict

            logger.debug(f"Block state race for {key.identifier} on {key.endpoint}, retrying")

        logger.warning(
            f"Block state for {key.identifier} on {key.endpoint} not updated "
            f"after {self._max_retries} attempts"
        )
        return verdict

    async def _completed_clean_window(
        self,
        key: WindowKey,
        state: BlockState,
        now: datetime,
        policy: GatePolicy,
    ) -> bool:
        """Whether the window before the live one qualifies for a violation reset."""
        previous = await self._counter.previous(key, now)
        if previous.count > policy.base_limit:
            return False
        if state.last_violation_window is not None and state.last_violation_window >= previous.window_start:
            return False
        # The clean window must start after the last block lifted
        if state.blocked_until is not None and state.blocked_until > previous.window_start:
            return False
        return True

    async def report_suspicious(
        self,
        identifier: str,
        severity: Severity,
        now: datetime | None = None,
    ) -> BlockState:
        """
        Feed a suspicious activity signal into the identifier-wide state.

        Args:
            identifier: Offending identifier
            severity: Signal severity
            now: Signal time (defaults to the clock)

        Returns:
            The resulting identifier-wide BlockState
        """
        moment = now or self._clock.now()
        window_start, _ = self._counter.bounds(moment)
        weight = self._policy.severity_weight(severity)

        new_state: BlockState | None = None
        for _ in range(self._max_retries):
            stored = await self._store.get_block(identifier, ANY_ENDPOINT)
            state = stored or BlockState(identifier=identifier, endpoint=ANY_ENDPOINT)

            new_state = replace(state)
            if stored is not None and self._wide_is_stale(state, window_start):
                new_state.consecutive_violations = 0
            new_state.consecutive_violations += weight
            new_state.last_violation_window = window_start
            new_state.last_seen_window = window_start

            if new_state.consecutive_violations >= self._policy.escalation_threshold:
                duration = self._policy.block_duration(new_state.consecutive_violations)
                until = moment + timedelta(seconds=duration)
                if state.blocked_until is not None and until < state.blocked_until:
                    until = state.blocked_until
                new_state.blocked_until = until

            if await self._store.compare_and_set_block(new_state, state.version):
                new_state = replace(new_state, version=state.version + 1)
                if new_state.is_blocked(moment):
                    logger.warning(
                        f"Suspicious activity ({severity.value}) from {identifier}: "
                        f"blocked until {new_state.blocked_until.isoformat()}"
                    )
                else:
                    logger.info(
                        f"Suspicious activity ({severity.value}) from {identifier}: "
                        f"{new_state.consecutive_violations} violations"
                    )
                return new_state

        logger.warning(
            f"Suspicion signal for {identifier} not recorded after {self._max_retries} attempts"
        )
        return new_state

    async def block_status(self, identifier: str, endpoint: str | None = None) -> dict[str, Any]:
        """
        Escalation state of an identifier for reporting.

        Args:
            identifier: Identifier to inspect
            endpoint: Endpoint to include besides the identifier-wide state

        Returns:
            Dict with identifier-wide and optional endpoint state
        """
        now = self._clock.now()
        wide = await self._store.get_block(identifier, ANY_ENDPOINT)
        result: dict[str, Any] = {
            "identifier": identifier,
            "identifier_wide": wide.to_dict() if wide else None,
            "blocked": bool(wide and wide.is_blocked(now)),
        }
        if endpoint is not None:
            state = await self._store.get_block(identifier, endpoint)
            result["endpoint"] = state.to_dict() if state else None
            result["blocked"] = result["blocked"] or bool(state and state.is_blocked(now))
        return result
