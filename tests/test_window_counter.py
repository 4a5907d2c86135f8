"""Tests for the fixed-window counter."""

from datetime import datetime, timedelta, timezone

import pytest

from gatekeeper.clock import ManualClock
from gatekeeper.quota.window import WindowCount, WindowCounter
from gatekeeper.store.base import IdentifierKind, WindowRecord
from gatekeeper.store.memory import InMemoryStore


@pytest.fixture
def counter(memory_store: InMemoryStore, clock: ManualClock) -> WindowCounter:
    return WindowCounter(memory_store, clock, window_seconds=3600)


class TestWindowCount:
    """Tests for WindowCount."""

    def test_seconds_remaining_rounds_up(self) -> None:
        """Test partial seconds count as a whole second."""
        start = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
        count = WindowCount(1, start, start + timedelta(hours=1))
        assert count.seconds_remaining(start + timedelta(minutes=59, seconds=59.5)) == 1
        assert count.seconds_remaining(start) == 3600

    def test_seconds_remaining_minimum(self) -> None:
        """Test a closed window reports at least one second."""
        start = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
        count = WindowCount(1, start, start + timedelta(hours=1))
        assert count.seconds_remaining(start + timedelta(hours=2)) == 1


class TestWindowCounter:
    """Tests for WindowCounter."""

    def test_invalid_window(self, memory_store: InMemoryStore, clock: ManualClock) -> None:
        """Test window length validation."""
        with pytest.raises(ValueError):
            WindowCounter(memory_store, clock, window_seconds=0)

    def test_key_infers_kind(self) -> None:
        """Test identifier kinds are inferred."""
        assert WindowCounter.key("10.0.0.1", "improve").identifier_type == IdentifierKind.IP
        assert WindowCounter.key("u1", "improve").identifier_type == IdentifierKind.USER
        assert WindowCounter.key("u1", "improve", IdentifierKind.IP).identifier_type == IdentifierKind.IP

    def test_bounds_are_epoch_aligned(self, counter: WindowCounter) -> None:
        """Test windows align to whole hours."""
        start, end = counter.bounds(datetime(2025, 1, 15, 12, 34, 56, tzinfo=timezone.utc))
        assert start == datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
        assert end == datetime(2025, 1, 15, 13, tzinfo=timezone.utc)

    def test_bounds_ignore_deployment_timezone(self, memory_store: InMemoryStore) -> None:
        """Test window alignment is the same in every timezone."""
        clock = ManualClock(datetime(2025, 1, 15, 12, 30, tzinfo=timezone.utc), tz_name="Asia/Kolkata")
        counter = WindowCounter(memory_store, clock, window_seconds=3600)
        start, _ = counter.bounds()
        assert start == datetime(2025, 1, 15, 12, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_increment_counts_k(self, counter: WindowCounter) -> None:
        """Test k increments give a count of k."""
        key = counter.key("1.2.3.4", "improve")
        for k in range(1, 6):
            count = await counter.increment(key)
            assert count.count == k

    @pytest.mark.asyncio
    async def test_new_window_starts_at_one(self, counter: WindowCounter, clock: ManualClock) -> None:
        """Test a request after the window end counts as 1."""
        key = counter.key("1.2.3.4", "improve")
        for _ in range(4):
            await counter.increment(key)

        clock.advance(hours=1)
        count = await counter.increment(key)
        assert count.count == 1
        assert count.window_start == datetime(2025, 1, 15, 13, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_peek_is_read_only(self, counter: WindowCounter) -> None:
        """Test peeking does not count."""
        key = counter.key("1.2.3.4", "improve")
        assert (await counter.peek(key)).count == 0
        await counter.increment(key)
        for _ in range(5):
            assert (await counter.peek(key)).count == 1

    @pytest.mark.asyncio
    async def test_endpoints_are_independent(self, counter: WindowCounter) -> None:
        """Test counts are per endpoint."""
        await counter.increment(counter.key("u1", "improve"))
        assert (await counter.peek(counter.key("u1", "other"))).count == 0

    @pytest.mark.asyncio
    async def test_previous(self, counter: WindowCounter, clock: ManualClock) -> None:
        """Test reading the window before the live one."""
        key = counter.key("u1", "improve")
        for _ in range(3):
            await counter.increment(key)

        clock.advance(hours=1, minutes=10)
        previous = await counter.previous(key)
        assert previous.count == 3
        assert previous.window_end == datetime(2025, 1, 15, 13, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_future_record_treated_as_expired(
        self, counter: WindowCounter, memory_store: InMemoryStore
    ) -> None:
        """Test a record starting far in the future is distrusted."""
        key = counter.key("u1", "improve")
        start, end = counter.bounds()
        memory_store._windows[(key, start)] = WindowRecord(
            identifier="u1",
            identifier_type=IdentifierKind.USER,
            endpoint="improve",
            window_start=start + timedelta(days=2),
            window_end=end + timedelta(days=2),
            requests_count=500,
        )
        assert (await counter.peek(key)).count == 0

    @pytest.mark.asyncio
    async def test_inverted_record_treated_as_expired(
        self, counter: WindowCounter, memory_store: InMemoryStore
    ) -> None:
        """Test a record ending before it starts is distrusted."""
        key = counter.key("u1", "improve")
        start, _ = counter.bounds()
        memory_store._windows[(key, start)] = WindowRecord(
            identifier="u1",
            identifier_type=IdentifierKind.USER,
            endpoint="improve",
            window_start=start,
            window_end=start - timedelta(hours=1),
            requests_count=500,
        )
        assert (await counter.peek(key)).count == 0
        # The increment itself still counts
        assert (await counter.increment(key)).count == 1

    @pytest.mark.asyncio
    async def test_mark_blocked_and_recent(self, counter: WindowCounter) -> None:
        """Test blocked windows show up in reports."""
        key = counter.key("u1", "improve")
        await counter.increment(key)
        await counter.mark_blocked(key, "Rate limit exceeded")

        assert (await counter.peek(key)).is_blocked is True
        recent = await counter.recent(identifier="u1", blocked_only=True)
        assert len(recent) == 1
        assert recent[0].block_reason == "Rate limit exceeded"
