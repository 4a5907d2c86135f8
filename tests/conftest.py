"""Pytest configuration and fixtures."""

import asyncio
import os
import tempfile
from collections.abc import Callable, Generator
from datetime import datetime, timezone

import pytest

from gatekeeper.admission import AdmissionController
from gatekeeper.clock import ManualClock
from gatekeeper.db.manager import DatabaseManager
from gatekeeper.errors import StoreUnavailable
from gatekeeper.quota.gate import AdaptiveGate, GatePolicy
from gatekeeper.quota.ledger import QuotaLedger
from gatekeeper.quota.window import WindowCounter
from gatekeeper.store.base import AdmissionStore
from gatekeeper.store.memory import InMemoryStore
from gatekeeper.store.sql import SqlStore
from gatekeeper.subscription import SubscriptionProvider

# Wednesday noon UTC, aligned to an hourly window boundary
START = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FailingStore(InMemoryStore):
    """In-memory store whose quota and/or counter operations raise."""

    def __init__(self, fail_quota: bool = True, fail_windows: bool = True) -> None:
        super().__init__()
        self.fail_quota = fail_quota
        self.fail_windows = fail_windows

    def _fail(self, enabled: bool) -> None:
        if enabled:
            raise StoreUnavailable("store is down", backend=self.name)

    async def get_quota(self, identity):
        self._fail(self.fail_quota)
        return await super().get_quota(identity)

    async def increment_quota(self, identity, today, limit=None, is_premium=None):
        self._fail(self.fail_quota)
        return await super().increment_quota(identity, today, limit=limit, is_premium=is_premium)

    async def get_window(self, key, window_start):
        self._fail(self.fail_windows)
        return await super().get_window(key, window_start)

    async def increment_window(self, key, window_start, window_end):
        self._fail(self.fail_windows)
        return await super().increment_window(key, window_start, window_end)

    async def get_block(self, identifier, endpoint):
        self._fail(self.fail_windows)
        return await super().get_block(identifier, endpoint)

    async def compare_and_set_block(self, state, expected_version):
        self._fail(self.fail_windows)
        return await super().compare_and_set_block(state, expected_version)

    async def prune_windows(self, before):
        self._fail(self.fail_windows)
        return await super().prune_windows(before)

    async def prune_blocks(self, before):
        self._fail(self.fail_windows)
        return await super().prune_blocks(before)


class SlowStore(InMemoryStore):
    """In-memory store whose reads take longer than any sane timeout."""

    def __init__(self, delay: float = 0.5) -> None:
        super().__init__()
        self.delay = delay

    async def get_quota(self, identity):
        await asyncio.sleep(self.delay)
        return await super().get_quota(identity)

    async def get_window(self, key, window_start):
        await asyncio.sleep(self.delay)
        return await super().get_window(key, window_start)


@pytest.fixture
def clock() -> ManualClock:
    """Manual clock starting at a window boundary."""
    return ManualClock(START)


@pytest.fixture
def memory_store() -> InMemoryStore:
    """Fresh in-memory store."""
    return InMemoryStore()


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    # Cleanup, including WAL side files
    for path in (db_path, f"{db_path}-wal", f"{db_path}-shm"):
        try:
            os.unlink(path)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def sql_store(db_manager: DatabaseManager) -> SqlStore:
    """SQL store on the temporary database (schema already created)."""
    return SqlStore(db_manager)


@pytest.fixture
def policy() -> GatePolicy:
    """Small gate policy so tests stay fast."""
    return GatePolicy(
        base_limit=3,
        hard_limit=5,
        escalation_threshold=3,
        base_block_seconds=60,
        backoff_multiplier=2.0,
        max_block_seconds=3600,
    )


@pytest.fixture
def make_controller(
    clock: ManualClock, memory_store: InMemoryStore
) -> Callable[..., AdmissionController]:
    """Factory building a controller around a store, sharing the test clock."""

    def _make(
        store: AdmissionStore | None = None,
        *,
        daily_limit: int = 5,
        policy: GatePolicy | None = None,
        store_timeout_ms: int = 1000,
        quota_fail_open: bool = True,
        subscriptions: SubscriptionProvider | None = None,
        window_seconds: int = 3600,
    ) -> AdmissionController:
        backing = store if store is not None else memory_store
        counter = WindowCounter(backing, clock, window_seconds=window_seconds)
        gate = AdaptiveGate(backing, counter, clock, policy=policy or GatePolicy())
        ledger = QuotaLedger(backing, clock, daily_limit, subscriptions=subscriptions)
        return AdmissionController(
            ledger,
            counter,
            gate,
            clock,
            store_timeout_ms=store_timeout_ms,
            quota_fail_open=quota_fail_open,
        )

    return _make
