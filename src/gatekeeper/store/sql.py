"""SQL admission store backed by SQLAlchemy.

Counters are updated with a single ``INSERT ... ON CONFLICT DO UPDATE ...
RETURNING`` statement so that the day reset, the quota predicate and the
increment happen in one round trip. Escalation state uses a versioned
``UPDATE ... WHERE version = :expected``.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, TypeVar

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gatekeeper.db.manager import DatabaseManager
from gatekeeper.db.models import BlockRecord, QuotaRecord, RateLimitWindow
from gatekeeper.errors import StoreUnavailable
from gatekeeper.store.base import (
    AdmissionStore,
    BlockState,
    IdentifierKind,
    QuotaIncrement,
    QuotaState,
    WindowKey,
    WindowRecord,
    to_utc,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_WINDOW_CONFLICT = ["identifier", "identifier_type", "endpoint", "window_start"]


def _naive(value: datetime | None) -> datetime | None:
    """Convert to naive UTC for storage."""
    if value is None:
        return None
    return to_utc(value).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    """Convert stored naive UTC back to aware UTC."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class SqlStore(AdmissionStore):
    """
    Relational store for multi-instance deployments.

    Supports SQLite (single host) and PostgreSQL. Blocking SQLAlchemy
    sessions run in worker threads so the event loop is never held.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        """
        Initialize SQL store.

        Args:
            db_manager: Database manager owning the engine
        """
        self._db = db_manager
        self._connected = False

    @classmethod
    def from_url(cls, database_url: str) -> "SqlStore":
        return cls(DatabaseManager(database_url=database_url))

    @property
    def name(self) -> str:
        return "sql"

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def db_manager(self) -> DatabaseManager:
        return self._db

    def _insert(self):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        if self._db.dialect == "postgresql":
            return postgresql.insert
        return sqlite.insert

    async def _run(self, operation: Callable[[Session], T]) -> T:
        """Run ``operation`` in one committed session on a worker thread."""

        def _in_session() -> T:
            with self._db.get_session() as session:
                return operation(session)

        try:
            return await asyncio.to_thread(_in_session)
        except SQLAlchemyError as e:
            logger.error(f"SQL store error: {e}")
            raise StoreUnavailable(f"SQL store error: {e.__class__.__name__}", backend=self.name) from e

    async def connect(self) -> None:
        try:
            await asyncio.to_thread(self._db.init_db)
        except SQLAlchemyError as e:
            self._connected = False
            raise StoreUnavailable("Failed to initialize SQL store", backend=self.name) from e
        self._connected = True

    # --- Quota ---

    @staticmethod
    def _quota_from_row(identity: str, row: Any) -> QuotaState:
        return QuotaState(
            identity=identity,
            queries_today=row.queries_today,
            total_queries=row.total_queries,
            last_query_date=row.last_query_date,
            is_premium=bool(row.is_premium),
        )

    async def get_quota(self, identity: str) -> QuotaState | None:
        def _op(session: Session) -> QuotaState | None:
            record = session.execute(
                select(QuotaRecord).where(QuotaRecord.identity == identity)
            ).scalar_one_or_none()
            if record is None:
                return None
            return self._quota_from_row(identity, record)

        return await self._run(_op)

    async def increment_quota(
        self,
        identity: str,
        today: date,
        limit: int | None = None,
        is_premium: bool | None = None,
    ) -> QuotaIncrement:
        insert = self._insert()

        def _op(session: Session) -> QuotaIncrement:
            if limit is not None and limit <= 0:
                current = session.execute(
                    select(QuotaRecord).where(QuotaRecord.identity == identity)
                ).scalar_one_or_none()
                state = self._quota_from_row(identity, current) if current else QuotaState(identity)
                return QuotaIncrement(state=state, applied=False)

            stmt = insert(QuotaRecord).values(
                identity=identity,
                queries_today=1,
                total_queries=1,
                last_query_date=today,
                is_premium=bool(is_premium),
            )
            predicate = None
            if limit is not None:
                # Apply only when a new day starts or the counter is below the limit
                predicate = or_(
                    QuotaRecord.last_query_date.is_(None),
                    QuotaRecord.last_query_date != today,
                    QuotaRecord.queries_today < limit,
                )
            stmt = stmt.on_conflict_do_update(
                index_elements=["identity"],
                set_={
                    "queries_today": case(
                        (QuotaRecord.last_query_date == today, QuotaRecord.queries_today + 1),
                        else_=1,
                    ),
                    "total_queries": QuotaRecord.total_queries + 1,
                    "last_query_date": today,
                    "is_premium": QuotaRecord.is_premium if is_premium is None else is_premium,
                    "updated_at": func.now(),
                },
                where=predicate,
            ).returning(
                QuotaRecord.queries_today,
                QuotaRecord.total_queries,
                QuotaRecord.last_query_date,
                QuotaRecord.is_premium,
            )

            row = session.execute(stmt).first()
            if row is not None:
                return QuotaIncrement(state=self._quota_from_row(identity, row), applied=True)

            # Predicate rejected the update
            current = session.execute(
                select(QuotaRecord).where(QuotaRecord.identity == identity)
            ).scalar_one()
            return QuotaIncrement(state=self._quota_from_row(identity, current), applied=False)

        return await self._run(_op)

    # --- Windows ---

    @staticmethod
    def _window_from_row(row: Any) -> WindowRecord:
        return WindowRecord(
            identifier=row.identifier,
            identifier_type=IdentifierKind(row.identifier_type),
            endpoint=row.endpoint,
            window_start=_aware(row.window_start),
            window_end=_aware(row.window_end),
            requests_count=row.requests_count,
            is_blocked=bool(row.is_blocked),
            block_reason=row.block_reason,
        )

    def _window_filter(self, key: WindowKey, window_start: datetime) -> list:
        return [
            RateLimitWindow.identifier == key.identifier,
            RateLimitWindow.identifier_type == key.identifier_type.value,
            RateLimitWindow.endpoint == key.endpoint,
            RateLimitWindow.window_start == _naive(window_start),
        ]

    async def get_window(self, key: WindowKey, window_start: datetime) -> WindowRecord | None:
        def _op(session: Session) -> WindowRecord | None:
            record = session.execute(
                select(RateLimitWindow).where(*self._window_filter(key, window_start))
            ).scalar_one_or_none()
            return self._window_from_row(record) if record else None

        return await self._run(_op)

    async def increment_window(
        self,
        key: WindowKey,
        window_start: datetime,
        window_end: datetime,
    ) -> WindowRecord:
        insert = self._insert()

        def _op(session: Session) -> WindowRecord:
            stmt = (
                insert(RateLimitWindow)
                .values(
                    identifier=key.identifier,
                    identifier_type=key.identifier_type.value,
                    endpoint=key.endpoint,
                    window_start=_naive(window_start),
                    window_end=_naive(window_end),
                    requests_count=1,
                    is_blocked=False,
                )
                .on_conflict_do_update(
                    index_elements=_WINDOW_CONFLICT,
                    set_={
                        "requests_count": RateLimitWindow.requests_count + 1,
                        "updated_at": func.now(),
                    },
                )
                .returning(
                    RateLimitWindow.identifier,
                    RateLimitWindow.identifier_type,
                    RateLimitWindow.endpoint,
                    RateLimitWindow.window_start,
                    RateLimitWindow.window_end,
                    RateLimitWindow.requests_count,
                    RateLimitWindow.is_blocked,
                    RateLimitWindow.block_reason,
                )
            )
            return self._window_from_row(session.execute(stmt).one())

        return await self._run(_op)

    async def mark_window_blocked(
        self,
        key: WindowKey,
        window_start: datetime,
        window_end: datetime,
        reason: str,
    ) -> None:
        insert = self._insert()

        def _op(session: Session) -> None:
            stmt = (
                insert(RateLimitWindow)
                .values(
                    identifier=key.identifier,
                    identifier_type=key.identifier_type.value,
                    endpoint=key.endpoint,
                    window_start=_naive(window_start),
                    window_end=_naive(window_end),
                    requests_count=0,
                    is_blocked=True,
                    block_reason=reason,
                )
                .on_conflict_do_update(
                    index_elements=_WINDOW_CONFLICT,
                    set_={"is_blocked": True, "block_reason": reason, "updated_at": func.now()},
                )
            )
            session.execute(stmt)

        await self._run(_op)

    async def list_windows(
        self,
        identifier: str | None = None,
        blocked_only: bool = False,
        limit: int = 100,
    ) -> list[WindowRecord]:
        def _op(session: Session) -> list[WindowRecord]:
            query = select(RateLimitWindow)
            if identifier is not None:
                query = query.where(RateLimitWindow.identifier == identifier)
            if blocked_only:
                query = query.where(RateLimitWindow.is_blocked.is_(True))
            query = query.order_by(RateLimitWindow.window_start.desc()).limit(limit)
            return [self._window_from_row(r) for r in session.execute(query).scalars()]

        return await self._run(_op)

    async def prune_windows(self, before: datetime) -> int:
        def _op(session: Session) -> int:
            result = session.execute(
                delete(RateLimitWindow).where(RateLimitWindow.window_end < _naive(before))
            )
            return result.rowcount or 0

        return await self._run(_op)

    async def prune_blocks(self, before: datetime) -> int:
        cutoff = _naive(before)

        def _quiet(column):
            return or_(column.is_(None), column < cutoff)

        def _op(session: Session) -> int:
            result = session.execute(
                delete(BlockRecord).where(
                    _quiet(BlockRecord.blocked_until),
                    _quiet(BlockRecord.last_violation_window),
                    _quiet(BlockRecord.last_seen_window),
                )
            )
            return result.rowcount or 0

        return await self._run(_op)

    # --- Escalation state ---

    async def get_block(self, identifier: str, endpoint: str) -> BlockState | None:
        def _op(session: Session) -> BlockState | None:
            record = session.execute(
                select(BlockRecord).where(
                    BlockRecord.identifier == identifier,
                    BlockRecord.endpoint == endpoint,
                )
            ).scalar_one_or_none()
            if record is None:
                return None
            return BlockState(
                identifier=record.identifier,
                endpoint=record.endpoint,
                consecutive_violations=record.consecutive_violations,
                blocked_until=_aware(record.blocked_until),
                last_violation_window=_aware(record.last_violation_window),
                last_seen_window=_aware(record.last_seen_window),
                version=record.version,
            )

        return await self._run(_op)

    async def compare_and_set_block(self, state: BlockState, expected_version: int) -> bool:
        insert = self._insert()
        values = {
            "consecutive_violations": state.consecutive_violations,
            "blocked_until": _naive(state.blocked_until),
            "last_violation_window": _naive(state.last_violation_window),
            "last_seen_window": _naive(state.last_seen_window),
        }

        def _op(session: Session) -> bool:
            if expected_version == 0:
                stmt = (
                    insert(BlockRecord)
                    .values(
                        identifier=state.identifier,
                        endpoint=state.endpoint,
                        version=1,
                        **values,
                    )
                    .on_conflict_do_nothing(index_elements=["identifier", "endpoint"])
                    .returning(BlockRecord.id)
                )
                return session.execute(stmt).first() is not None

            result = session.execute(
                update(BlockRecord)
                .where(
                    BlockRecord.identifier == state.identifier,
                    BlockRecord.endpoint == state.endpoint,
                    BlockRecord.version == expected_version,
                )
                .values(version=expected_version + 1, updated_at=func.now(), **values)
            )
            return result.rowcount == 1

        return await self._run(_op)

    async def close(self) -> None:
        await asyncio.to_thread(self._db.close)
        self._connected = False

    async def health_check(self) -> dict[str, Any]:
        healthy = await asyncio.to_thread(self._db.health_check)
        return {
            "backend": self.name,
            "connected": healthy,
            "dialect": self._db.dialect,
        }
