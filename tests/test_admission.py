"""Tests for the admission controller."""

import asyncio
import json
from pathlib import Path

import pytest

from gatekeeper.admission import (
    AdmissionController,
    AdmissionDecision,
    AdmissionResult,
    validate_identity,
)
from gatekeeper.clock import ManualClock
from gatekeeper.config import Settings
from gatekeeper.errors import InvalidIdentity, StoreUnavailable
from gatekeeper.quota.gate import GatePolicy, Severity
from gatekeeper.store.base import IdentifierKind
from gatekeeper.store.memory import InMemoryStore
from gatekeeper.store.sql import SqlStore
from gatekeeper.subscription import StaticSubscriptionProvider, Subscription

from conftest import FailingStore, SlowStore


async def call(controller: AdmissionController, identity: str, endpoint: str = "improve") -> AdmissionResult:
    """Evaluate one call and record it when admitted, like the HTTP dependency does."""
    result = await controller.evaluate_admission(identity, endpoint=endpoint)
    if result.allowed:
        await controller.record_success(identity, endpoint)
    return result


class TestAdmissionResult:
    """Tests for AdmissionResult."""

    def test_allowed(self) -> None:
        """Test which decisions admit the call."""
        for decision, allowed in [
            (AdmissionDecision.ALLOW, True),
            (AdmissionDecision.THROTTLED, True),
            (AdmissionDecision.DENY_QUOTA, False),
            (AdmissionDecision.DENY_RATE, False),
            (AdmissionDecision.DENY_BLOCKED, False),
        ]:
            assert AdmissionResult(decision, "u1", "improve").allowed is allowed

    def test_headers(self, clock: ManualClock) -> None:
        """Test rate limit headers."""
        result = AdmissionResult(
            AdmissionDecision.DENY_QUOTA,
            "u1",
            "improve",
            queries_used=5,
            queries_limit=5,
            reset_time=clock.next_midnight(),
            retry_after_seconds=43200,
        )
        headers = result.headers()
        assert headers["X-RateLimit-Limit"] == "5"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["X-RateLimit-Reset"] == str(int(clock.next_midnight().timestamp()))
        assert headers["Retry-After"] == "43200"

    def test_headers_unlimited(self) -> None:
        """Test unlimited results carry no limit headers."""
        assert AdmissionResult(AdmissionDecision.ALLOW, "u1", "improve").headers() == {}

    def test_to_dict(self) -> None:
        """Test serialization."""
        data = AdmissionResult(AdmissionDecision.THROTTLED, "u1", "improve", requests_count=4).to_dict()
        assert data["decision"] == "throttled"
        assert data["allowed"] is True
        assert data["requests_count"] == 4
        assert data["reset_time"] is None


class TestValidateIdentity:
    """Tests for identity validation."""

    @pytest.mark.parametrize("identity", ["", "   ", "x" * 256, "bad\nid", "nul\x00", None, 42])
    def test_invalid(self, identity) -> None:
        """Test malformed identities are rejected."""
        with pytest.raises(InvalidIdentity):
            validate_identity(identity)

    @pytest.mark.parametrize("identity", ["u1", "1.2.3.4", "2001:db8::1", "x" * 255, "user@example.com"])
    def test_valid(self, identity: str) -> None:
        """Test well-formed identities pass through."""
        assert validate_identity(identity) == identity


class TestDailyQuota:
    """Daily quota through the controller."""

    @pytest.mark.asyncio
    async def test_five_calls_then_denied(self, make_controller) -> None:
        """Test calls 1-5 are admitted with 0..4 used and call 6 is denied."""
        controller = make_controller(daily_limit=5)

        for used_before in range(5):
            result = await call(controller, "u1")
            assert result.decision == AdmissionDecision.ALLOW
            assert result.queries_used == used_before
            assert result.queries_limit == 5

        denied = await call(controller, "u1")
        assert denied.decision == AdmissionDecision.DENY_QUOTA
        assert denied.allowed is False
        assert denied.queries_used == 5
        assert denied.queries_limit == 5
        # Clock is at noon UTC: twelve hours to the reset
        assert denied.retry_after_seconds == 12 * 3600
        assert "Daily limit reached" in denied.message

    @pytest.mark.asyncio
    async def test_date_change_resets(self, make_controller, clock: ManualClock) -> None:
        """Test usage restarts at zero on the next calendar day."""
        controller = make_controller(daily_limit=5)
        for _ in range(5):
            await call(controller, "u1")
        assert (await controller.evaluate_admission("u1")).decision == AdmissionDecision.DENY_QUOTA

        clock.advance(hours=12)
        result = await controller.evaluate_admission("u1")
        assert result.decision == AdmissionDecision.ALLOW
        assert result.queries_used == 0

        recorded = await controller.record_success("u1")
        assert recorded.queries_used == 1

    @pytest.mark.asyncio
    async def test_evaluate_is_idempotent(self, make_controller, memory_store: InMemoryStore) -> None:
        """Test repeated evaluations change neither counter."""
        controller = make_controller()
        await controller.record_success("u1", "improve")

        for _ in range(20):
            await controller.evaluate_admission("u1", endpoint="improve")

        assert (await memory_store.get_quota("u1")).queries_today == 1
        key = controller.counter.key("u1", "improve")
        assert (await controller.counter.peek(key)).count == 1

    @pytest.mark.asyncio
    async def test_concurrent_records_memory(self, make_controller) -> None:
        """Test 100 concurrent records for a limit of 5 record exactly 5."""
        controller = make_controller(daily_limit=5)

        results = await asyncio.gather(*(controller.record_success("u1") for _ in range(100)))
        assert sum(r.recorded for r in results) == 5

        denied = await controller.evaluate_admission("u1")
        assert denied.decision == AdmissionDecision.DENY_QUOTA
        assert denied.queries_used == 5

    @pytest.mark.asyncio
    async def test_concurrent_calls_memory(self, make_controller) -> None:
        """Test racing evaluate-then-record calls never overshoot the limit."""
        controller = make_controller(daily_limit=5)
        await asyncio.gather(*(call(controller, "u1") for _ in range(100)))
        assert (await controller.usage("u1"))["queries_today"] == 5

    @pytest.mark.asyncio
    async def test_concurrent_records_sql(self, make_controller, sql_store: SqlStore) -> None:
        """Test concurrent records against the SQL store record exactly 5."""
        controller = make_controller(sql_store, daily_limit=5, store_timeout_ms=30_000)

        results = await asyncio.gather(*(controller.record_success("u1") for _ in range(20)))
        assert sum(r.recorded for r in results) == 5
        assert (await controller.evaluate_admission("u1")).decision == AdmissionDecision.DENY_QUOTA

    @pytest.mark.asyncio
    async def test_premium_is_unlimited(self, make_controller) -> None:
        """Test premium identities are never denied by the quota."""
        provider = StaticSubscriptionProvider({"vip": Subscription(is_premium=True)})
        controller = make_controller(daily_limit=2, subscriptions=provider)

        for _ in range(10):
            result = await call(controller, "vip")
            assert result.decision == AdmissionDecision.ALLOW
            assert result.is_premium is True
            assert result.queries_limit is None

    @pytest.mark.asyncio
    async def test_explicit_premium_hint(self, make_controller) -> None:
        """Test the caller-supplied premium flag."""
        controller = make_controller(daily_limit=1)
        await controller.record_success("u1", is_premium=True)
        await controller.record_success("u1", is_premium=True)
        result = await controller.evaluate_admission("u1", is_premium=True)
        assert result.allowed is True
        assert result.queries_used == 2


class TestRateLimiting:
    """Window limits and escalation through the controller."""

    @pytest.mark.asyncio
    async def test_request_101_throttled_then_next_hour_allowed(
        self, make_controller, clock: ManualClock
    ) -> None:
        """Test 101 requests in one hour with a base limit of 100."""
        controller = make_controller(daily_limit=1000, policy=GatePolicy(base_limit=100, hard_limit=200))

        for _ in range(100):
            assert (await call(controller, "1.2.3.4")).decision == AdmissionDecision.ALLOW

        result = await call(controller, "1.2.3.4")
        assert result.decision == AdmissionDecision.THROTTLED
        assert result.allowed is True
        assert result.requests_count == 101
        assert result.retry_after_seconds == 3600

        clock.advance(hours=1)
        result = await controller.evaluate_admission("1.2.3.4", endpoint="improve")
        assert result.decision == AdmissionDecision.ALLOW
        assert result.requests_count == 1

    @pytest.mark.asyncio
    async def test_request_101_denied_with_tight_hard_limit(
        self, make_controller, clock: ManualClock
    ) -> None:
        """Test request 101 is denied when the hard limit equals the base limit."""
        controller = make_controller(daily_limit=1000, policy=GatePolicy(base_limit=100, hard_limit=100))

        for _ in range(100):
            await call(controller, "1.2.3.4")

        result = await call(controller, "1.2.3.4")
        assert result.decision == AdmissionDecision.DENY_RATE
        assert result.retry_after_seconds == 120

        clock.advance(hours=1)
        assert (await controller.evaluate_admission("1.2.3.4", endpoint="improve")).decision == AdmissionDecision.ALLOW

    @pytest.mark.asyncio
    async def test_escalation_grows_retry_after(self, make_controller, clock: ManualClock) -> None:
        """Test three violating windows give a longer block than the first."""
        policy = GatePolicy(
            base_limit=10,
            hard_limit=20,
            escalation_threshold=3,
            base_block_seconds=60,
            backoff_multiplier=2.0,
        )
        controller = make_controller(daily_limit=1000, policy=policy)

        blocks = []
        for _ in range(2):
            results = [await call(controller, "u1") for _ in range(21)]
            assert all(r.decision == AdmissionDecision.ALLOW for r in results[:10])
            assert all(r.decision == AdmissionDecision.THROTTLED for r in results[10:20])
            assert results[20].decision == AdmissionDecision.DENY_RATE
            blocks.append(results[20])
            clock.advance(hours=1)

        results = [await call(controller, "u1") for _ in range(11)]
        third = results[10]
        assert third.decision == AdmissionDecision.DENY_BLOCKED
        assert third.retry_after_seconds > blocks[0].retry_after_seconds
        assert [b.retry_after_seconds for b in blocks] == [120, 240]
        assert third.retry_after_seconds == 480

    @pytest.mark.asyncio
    async def test_escalated_block_holds_for_rest_of_window(
        self, make_controller, clock: ManualClock
    ) -> None:
        """Test an escalated offender is blocked again once the block lifts mid-window."""
        policy = GatePolicy(base_limit=10, hard_limit=20, escalation_threshold=3)
        controller = make_controller(daily_limit=1000, policy=policy)

        for _ in range(2):
            for _ in range(21):
                await call(controller, "u1")
            clock.advance(hours=1)

        results = [await call(controller, "u1") for _ in range(11)]
        assert results[10].decision == AdmissionDecision.DENY_BLOCKED

        clock.advance(seconds=481)
        result = await call(controller, "u1")
        assert result.decision == AdmissionDecision.DENY_BLOCKED
        assert result.requests_count == 11
        assert result.retry_after_seconds == 480

    @pytest.mark.asyncio
    async def test_identifier_kind_namespaces_windows(self, make_controller) -> None:
        """Test the same string counted as user and as ip is kept apart."""
        controller = make_controller()
        await controller.record_success("abc", identifier_kind=IdentifierKind.USER)
        await controller.record_success("abc", identifier_kind="ip")

        windows = await controller.list_windows("abc")
        assert sorted(w.identifier_type.value for w in windows) == ["ip", "user"]

    @pytest.mark.asyncio
    async def test_reserved_endpoint_rejected(self, make_controller) -> None:
        """Test the identifier-wide endpoint name cannot be gated."""
        controller = make_controller()
        with pytest.raises(ValueError):
            await controller.evaluate_admission("u1", endpoint="*")


class TestSuspicion:
    """Suspicion signals through the controller."""

    @pytest.mark.asyncio
    async def test_high_signal_blocks(self, make_controller) -> None:
        """Test a HIGH signal denies the identifier on every endpoint."""
        controller = make_controller()
        state = await controller.report_suspicious_signal("1.2.3.4", "high")
        assert state.blocked_until is not None

        for endpoint in ("improve", "search"):
            result = await controller.evaluate_admission("1.2.3.4", endpoint=endpoint)
            assert result.decision == AdmissionDecision.DENY_BLOCKED
            assert result.retry_after_seconds > 0

        status = await controller.block_status("1.2.3.4")
        assert status["blocked"] is True

    @pytest.mark.asyncio
    async def test_unknown_severity(self, make_controller) -> None:
        """Test unknown severities are rejected."""
        controller = make_controller()
        with pytest.raises(ValueError):
            await controller.report_suspicious_signal("u1", "critical")

    @pytest.mark.asyncio
    async def test_signal_store_failure(self, make_controller) -> None:
        """Test a failed signal write is absorbed."""
        controller = make_controller(FailingStore())
        assert await controller.report_suspicious_signal("u1", Severity.LOW) is None

    @pytest.mark.asyncio
    async def test_invalid_identity(self, make_controller) -> None:
        """Test malformed identities are client errors, not denials."""
        controller = make_controller()
        with pytest.raises(InvalidIdentity):
            await controller.evaluate_admission("")
        with pytest.raises(InvalidIdentity):
            await controller.record_success("a\tb")
        with pytest.raises(InvalidIdentity):
            await controller.report_suspicious_signal(" ", "low")


class TestFailurePolicy:
    """Store outages and timeouts."""

    @pytest.mark.asyncio
    async def test_fail_open(self, make_controller) -> None:
        """Test a full outage admits the call when failing open."""
        controller = make_controller(FailingStore(), quota_fail_open=True)

        result = await controller.evaluate_admission("u1")
        assert result.decision == AdmissionDecision.ALLOW
        assert result.degraded is True

        recorded = await controller.record_success("u1")
        assert recorded.recorded is False
        assert recorded.degraded is True

    @pytest.mark.asyncio
    async def test_fail_closed(self, make_controller) -> None:
        """Test a quota outage raises when failing closed."""
        controller = make_controller(FailingStore(), quota_fail_open=False)
        with pytest.raises(StoreUnavailable):
            await controller.evaluate_admission("u1")

    @pytest.mark.asyncio
    async def test_gate_always_fails_open(self, make_controller) -> None:
        """Test a counter outage never denies, even when the quota fails closed."""
        store = FailingStore(fail_quota=False, fail_windows=True)
        controller = make_controller(store, quota_fail_open=False)

        result = await controller.evaluate_admission("u1")
        assert result.decision == AdmissionDecision.ALLOW
        assert result.degraded is True
        assert result.queries_used == 0

        recorded = await controller.record_success("u1")
        assert recorded.recorded is True
        assert recorded.degraded is True
        assert recorded.requests_count is None

    @pytest.mark.asyncio
    async def test_timeout_fails_open(self, make_controller) -> None:
        """Test a slow store is bounded by the timeout."""
        controller = make_controller(SlowStore(delay=0.5), store_timeout_ms=50)

        result = await controller.evaluate_admission("u1")
        assert result.decision == AdmissionDecision.ALLOW
        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_timeout_fails_closed(self, make_controller) -> None:
        """Test a slow quota store raises when failing closed."""
        controller = make_controller(SlowStore(delay=0.5), store_timeout_ms=50, quota_fail_open=False)
        with pytest.raises(StoreUnavailable, match="timed out"):
            await controller.evaluate_admission("u1")


class TestReporting:
    """Usage and reporting lookups."""

    @pytest.mark.asyncio
    async def test_usage(self, make_controller) -> None:
        """Test the usage summary."""
        controller = make_controller()
        assert await controller.usage("u1") is None

        await controller.record_success("u1")
        stats = await controller.usage("u1")
        assert stats["queries_today"] == 1
        assert stats["remaining"] == 4

    @pytest.mark.asyncio
    async def test_list_windows(self, make_controller, clock: ManualClock) -> None:
        """Test listing recent windows."""
        controller = make_controller()
        await controller.record_success("u1", "improve")
        clock.advance(hours=1)
        await controller.record_success("u1", "improve")

        windows = await controller.list_windows("u1")
        assert len(windows) == 2
        assert windows[0].window_start > windows[1].window_start


class TestFromSettings:
    """Tests for building a controller from settings."""

    def test_from_settings(self, tmp_path: Path, memory_store: InMemoryStore, clock: ManualClock) -> None:
        """Test configuration is applied to every component."""
        policy_file = tmp_path / "gate.json"
        policy_file.write_text(json.dumps({"login": {"base_limit": 5, "hard_limit": 10}}))
        settings = Settings(
            daily_limit=2,
            base_limit=50,
            hard_limit=80,
            window_seconds=600,
            quota_fail_open=False,
            gate_policy_path=str(policy_file),
        )

        controller = AdmissionController.from_settings(memory_store, settings, clock=clock)

        assert controller.ledger.daily_limit == 2
        assert controller.counter.window_seconds == 600
        assert controller.gate.policy.base_limit == 50
        assert controller.gate.policy_for("login").hard_limit == 10

    @pytest.mark.asyncio
    async def test_from_settings_windows(self, memory_store: InMemoryStore, clock: ManualClock) -> None:
        """Test the configured window length is used for counting."""
        settings = Settings(window_seconds=600)
        controller = AdmissionController.from_settings(memory_store, settings, clock=clock)
        await controller.record_success("u1")

        clock.advance(minutes=10)
        result = await controller.evaluate_admission("u1")
        assert result.requests_count == 1
