"""In-memory admission store implementation."""

import asyncio
import logging
from dataclasses import replace
from datetime import date, datetime
from typing import Any

from gatekeeper.store.base import (
    AdmissionStore,
    BlockState,
    QuotaIncrement,
    QuotaState,
    WindowKey,
    WindowRecord,
    to_utc,
)

logger = logging.getLogger(__name__)


class InMemoryStore(AdmissionStore):
    """
    In-memory store backed by dictionaries.

    Best for:
    - Single-instance deployments
    - Development and testing

    Limitations:
    - Not shared across instances: each process counts on its own,
      so horizontally scaled deployments must use the SQL or Redis store
    - Lost on restart
    """

    def __init__(self) -> None:
        self._quotas: dict[str, QuotaState] = {}
        self._windows: dict[tuple[WindowKey, datetime], WindowRecord] = {}
        self._blocks: dict[tuple[str, str], BlockState] = {}
        self._lock = asyncio.Lock()
        self._connected = True

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def get_quota(self, identity: str) -> QuotaState | None:
        async with self._lock:
            state = self._quotas.get(identity)
            return replace(state) if state else None

    async def increment_quota(
        self,
        identity: str,
        today: date,
        limit: int | None = None,
        is_premium: bool | None = None,
    ) -> QuotaIncrement:
        async with self._lock:
            state = self._quotas.get(identity)
            if state is None:
                state = QuotaState(identity=identity)
                self._quotas[identity] = state

            used = state.used_on(today)
            if limit is not None and used >= limit:
                return QuotaIncrement(state=replace(state), applied=False)

            state.queries_today = used + 1
            state.last_query_date = today
            state.total_queries += 1
            if is_premium is not None:
                state.is_premium = is_premium
            return QuotaIncrement(state=replace(state), applied=True)

    async def get_window(self, key: WindowKey, window_start: datetime) -> WindowRecord | None:
        async with self._lock:
            record = self._windows.get((key, to_utc(window_start)))
            return replace(record) if record else None

    async def increment_window(
        self,
        key: WindowKey,
        window_start: datetime,
        window_end: datetime,
    ) -> WindowRecord:
        async with self._lock:
            record = self._get_or_create_window(key, window_start, window_end)
            record.requests_count += 1
            return replace(record)

    async def mark_window_blocked(
        self,
        key: WindowKey,
        window_start: datetime,
        window_end: datetime,
        reason: str,
    ) -> None:
        async with self._lock:
            record = self._get_or_create_window(key, window_start, window_end)
            record.is_blocked = True
            record.block_reason = reason

    def _get_or_create_window(
        self,
        key: WindowKey,
        window_start: datetime,
        window_end: datetime,
    ) -> WindowRecord:
        """Fetch the live record or create it (caller must hold lock)."""
        start = to_utc(window_start)
        record = self._windows.get((key, start))
        if record is None:
            record = WindowRecord(
                identifier=key.identifier,
                identifier_type=key.identifier_type,
                endpoint=key.endpoint,
                window_start=start,
                window_end=to_utc(window_end),
            )
            self._windows[(key, start)] = record
        return record

    async def list_windows(
        self,
        identifier: str | None = None,
        blocked_only: bool = False,
        limit: int = 100,
    ) -> list[WindowRecord]:
        async with self._lock:
            records = [
                replace(r) for r in self._windows.values()
                if (identifier is None or r.identifier == identifier)
                and (not blocked_only or r.is_blocked)
            ]
        records.sort(key=lambda r: r.window_start, reverse=True)
        return records[:limit]

    async def prune_windows(self, before: datetime) -> int:
        cutoff = to_utc(before)
        async with self._lock:
            stale = [k for k, r in self._windows.items() if r.window_end < cutoff]
            for k in stale:
                del self._windows[k]
        if stale:
            logger.debug(f"Pruned {len(stale)} in-memory window records")
        return len(stale)

    async def prune_blocks(self, before: datetime) -> int:
        cutoff = to_utc(before)
        async with self._lock:
            stale = [
                k for k, s in self._blocks.items()
                if s.last_activity() is None or s.last_activity() < cutoff
            ]
            for k in stale:
                del self._blocks[k]
        if stale:
            logger.debug(f"Pruned {len(stale)} in-memory block states")
        return len(stale)

    async def get_block(self, identifier: str, endpoint: str) -> BlockState | None:
        async with self._lock:
            state = self._blocks.get((identifier, endpoint))
            return replace(state) if state else None

    async def compare_and_set_block(self, state: BlockState, expected_version: int) -> bool:
        key = (state.identifier, state.endpoint)
        async with self._lock:
            current = self._blocks.get(key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._blocks[key] = replace(state, version=expected_version + 1)
            return True

    async def close(self) -> None:
        self._connected = False
        self._quotas.clear()
        self._windows.clear()
        self._blocks.clear()

    async def health_check(self) -> dict[str, Any]:
        """Return health status with record counts."""
        async with self._lock:
            return {
                "backend": self.name,
                "connected": self.is_connected,
                "quota_records": len(self._quotas),
                "window_records": len(self._windows),
                "block_records": len(self._blocks),
            }
