"""Redis admission store implementation.

Each read-modify-write runs as a Lua script so that it is atomic on the
Redis server regardless of how many application instances share it.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

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


# KEYS[1] quota hash
# ARGV: today, limit (-1 = unlimited), premium ('' = unchanged, '0', '1')
QUOTA_INCREMENT_LUA = """
local key = KEYS[1]
local today = ARGV[1]
local limit = tonumber(ARGV[2])
local premium = ARGV[3]
local used = 0
if redis.call('HGET', key, 'last_query_date') == today then
  used = tonumber(redis.call('HGET', key, 'queries_today') or '0')
end
local applied = 0
if limit < 0 or used < limit then
  applied = 1
  redis.call('HSET', key, 'queries_today', used + 1, 'last_query_date', today)
  redis.call('HINCRBY', key, 'total_queries', 1)
  if premium ~= '' then
    redis.call('HSET', key, 'is_premium', premium)
  end
end
return {
  applied,
  redis.call('HGET', key, 'queries_today') or '0',
  redis.call('HGET', key, 'total_queries') or '0',
  redis.call('HGET', key, 'last_query_date') or '',
  redis.call('HGET', key, 'is_premium') or '0'
}
"""

# KEYS[1] window hash, KEYS[2] window index (sorted set scored by window end)
# ARGV: window_start, window_end, expire_at, identifier, identifier_type, endpoint
WINDOW_INCREMENT_LUA = """
local key = KEYS[1]
local count = redis.call('HINCRBY', key, 'requests_count', 1)
if count == 1 then
  redis.call('HSET', key,
    'window_start', ARGV[1], 'window_end', ARGV[2],
    'identifier', ARGV[4], 'identifier_type', ARGV[5], 'endpoint', ARGV[6])
  redis.call('EXPIREAT', key, ARGV[3])
  redis.call('ZADD', KEYS[2], ARGV[2], key)
end
return count
"""

# Same KEYS/ARGV as WINDOW_INCREMENT_LUA plus ARGV[7] block reason
WINDOW_BLOCK_LUA = """
local key = KEYS[1]
redis.call('HSETNX', key, 'requests_count', 0)
redis.call('HSET', key,
  'window_start', ARGV[1], 'window_end', ARGV[2],
  'identifier', ARGV[4], 'identifier_type', ARGV[5], 'endpoint', ARGV[6],
  'is_blocked', 1, 'block_reason', ARGV[7])
redis.call('EXPIREAT', key, ARGV[3])
redis.call('ZADD', KEYS[2], ARGV[2], key)
return 1
"""

# KEYS[1] block hash, KEYS[2] block index (sorted by last activity)
# ARGV: expected_version, violations, blocked_until, last_violation_window,
#       last_seen_window, identifier, endpoint ('' encodes None), activity
BLOCK_CAS_LUA = """
local key = KEYS[1]
local current = tonumber(redis.call('HGET', key, 'version') or '0')
if current ~= tonumber(ARGV[1]) then
  return 0
end
redis.call('HSET', key,
  'version', current + 1,
  'consecutive_violations', ARGV[2],
  'blocked_until', ARGV[3],
  'last_violation_window', ARGV[4],
  'last_seen_window', ARGV[5],
  'identifier', ARGV[6],
  'endpoint', ARGV[7])
redis.call('ZADD', KEYS[2], ARGV[8], key)
return 1
"""

# KEYS[1] block index
# ARGV: cutoff (states last active before it are deleted)
BLOCK_PRUNE_LUA = """
local stale = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[1])
for _, key in ipairs(stale) do
  redis.call('DEL', key)
  redis.call('ZREM', KEYS[1], key)
end
return #stale
"""


def _epoch(value: datetime | None) -> str:
    if value is None:
        return ""
    return repr(to_utc(value).timestamp())


def _from_epoch(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisStore(AdmissionStore):
    """
    Redis store for distributed deployments.

    Best for:
    - Multi-instance deployments sharing one counter service
    - High-throughput admission checks

    Window records expire ``retention_seconds`` after their window ends;
    quota hashes never expire. Block states are indexed by their last
    activity so that retention can delete quiet ones.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "gatekeeper:",
        retention_seconds: int = 30 * 86400,
        max_connections: int = 10,
        socket_timeout: float = 0.5,
        socket_connect_timeout: float = 1.0,
        client: Any = None,
    ) -> None:
        """
        Initialize Redis store.

        Args:
            url: Redis connection URL
            prefix: Key prefix for namespacing
            retention_seconds: How long stale window records are kept
            max_connections: Maximum connections in pool
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
            client: Pre-built ``redis.asyncio`` client
        """
        self._url = url
        self._prefix = prefix
        self._retention_seconds = retention_seconds
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._client: Any = client
        self._scripts: dict[str, Any] = {}
        self._connected = client is not None
        if client is not None:
            self._register_scripts()

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _key(self, *parts: str) -> str:
        return self._prefix + ":".join(parts)

    def _quota_key(self, identity: str) -> str:
        return self._key("quota", identity)

    def _window_key(self, key: WindowKey, window_start: datetime) -> str:
        return self._key(
            "window",
            key.identifier_type.value,
            key.endpoint,
            str(int(to_utc(window_start).timestamp())),
            key.identifier,
        )

    def _window_index_key(self) -> str:
        return self._key("windows")

    def _block_key(self, identifier: str, endpoint: str) -> str:
        return self._key("block", endpoint, identifier)

    def _block_index_key(self) -> str:
        return self._key("blocks")

    def _register_scripts(self) -> None:
        self._scripts = {
            "quota": self._client.register_script(QUOTA_INCREMENT_LUA),
            "window": self._client.register_script(WINDOW_INCREMENT_LUA),
            "window_block": self._client.register_script(WINDOW_BLOCK_LUA),
            "block_cas": self._client.register_script(BLOCK_CAS_LUA),
            "block_prune": self._client.register_script(BLOCK_PRUNE_LUA),
        }

    async def connect(self) -> None:
        """Connect to Redis and register scripts."""
        if self._connected and self._client:
            return

        try:
            self._client = redis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                decode_responses=True,
            )
            await self._client.ping()
            self._register_scripts()
            self._connected = True
            logger.info(f"Connected to Redis at {self._url}")
        except RedisError as e:
            self._connected = False
            logger.error(f"Failed to connect to Redis: {e}")
            raise StoreUnavailable("Failed to connect to Redis", backend=self.name) from e

    async def _ensure_connected(self) -> None:
        if not self._connected:
            await self.connect()

    def _unavailable(self, operation: str, error: Exception) -> StoreUnavailable:
        logger.error(f"Redis {operation} error: {error}")
        return StoreUnavailable(f"Redis {operation} failed", backend=self.name)

    # --- Quota ---

    async def get_quota(self, identity: str) -> QuotaState | None:
        await self._ensure_connected()
        try:
            data = await self._client.hgetall(self._quota_key(identity))
        except RedisError as e:
            raise self._unavailable("HGETALL", e) from e

        if not data:
            return None
        last = data.get("last_query_date")
        return QuotaState(
            identity=identity,
            queries_today=int(data.get("queries_today", 0)),
            total_queries=int(data.get("total_queries", 0)),
            last_query_date=date.fromisoformat(last) if last else None,
            is_premium=data.get("is_premium") == "1",
        )

    async def increment_quota(
        self,
        identity: str,
        today: date,
        limit: int | None = None,
        is_premium: bool | None = None,
    ) -> QuotaIncrement:
        await self._ensure_connected()
        premium_arg = "" if is_premium is None else ("1" if is_premium else "0")
        try:
            applied, used, total, last, premium = await self._scripts["quota"](
                keys=[self._quota_key(identity)],
                args=[today.isoformat(), -1 if limit is None else limit, premium_arg],
            )
        except RedisError as e:
            raise self._unavailable("quota increment", e) from e

        state = QuotaState(
            identity=identity,
            queries_today=int(used),
            total_queries=int(total),
            last_query_date=date.fromisoformat(last) if last else None,
            is_premium=str(premium) == "1",
        )
        return QuotaIncrement(state=state, applied=int(applied) == 1)

    # --- Windows ---

    def _window_args(self, key: WindowKey, window_start: datetime, window_end: datetime) -> list[Any]:
        expire_at = int(to_utc(window_end).timestamp()) + self._retention_seconds
        return [
            _epoch(window_start),
            _epoch(window_end),
            expire_at,
            key.identifier,
            key.identifier_type.value,
            key.endpoint,
        ]

    @staticmethod
    def _window_from_hash(data: dict[str, str]) -> WindowRecord:
        return WindowRecord(
            identifier=data["identifier"],
            identifier_type=IdentifierKind(data["identifier_type"]),
            endpoint=data["endpoint"],
            window_start=_from_epoch(data["window_start"]),
            window_end=_from_epoch(data["window_end"]),
            requests_count=int(data.get("requests_count", 0)),
            is_blocked=data.get("is_blocked") == "1",
            block_reason=data.get("block_reason") or None,
        )

    async def get_window(self, key: WindowKey, window_start: datetime) -> WindowRecord | None:
        await self._ensure_connected()
        try:
            data = await self._client.hgetall(self._window_key(key, window_start))
        except RedisError as e:
            raise self._unavailable("HGETALL", e) from e
        if not data or "window_start" not in data:
            return None
        return self._window_from_hash(data)

    async def increment_window(
        self,
        key: WindowKey,
        window_start: datetime,
        window_end: datetime,
    ) -> WindowRecord:
        await self._ensure_connected()
        try:
            count = await self._scripts["window"](
                keys=[self._window_key(key, window_start), self._window_index_key()],
                args=self._window_args(key, window_start, window_end),
            )
        except RedisError as e:
            raise self._unavailable("window increment", e) from e

        return WindowRecord(
            identifier=key.identifier,
            identifier_type=key.identifier_type,
            endpoint=key.endpoint,
            window_start=to_utc(window_start),
            window_end=to_utc(window_end),
            requests_count=int(count),
        )

    async def mark_window_blocked(
        self,
        key: WindowKey,
        window_start: datetime,
        window_end: datetime,
        reason: str,
    ) -> None:
        await self._ensure_connected()
        try:
            await self._scripts["window_block"](
                keys=[self._window_key(key, window_start), self._window_index_key()],
                args=self._window_args(key, window_start, window_end) + [reason],
            )
        except RedisError as e:
            raise self._unavailable("window block", e) from e

    async def list_windows(
        self,
        identifier: str | None = None,
        blocked_only: bool = False,
        limit: int = 100,
    ) -> list[WindowRecord]:
        await self._ensure_connected()
        try:
            keys = await self._client.zrevrange(self._window_index_key(), 0, -1)
            records: list[WindowRecord] = []
            for key in keys:
                data = await self._client.hgetall(key)
                if not data or "window_start" not in data:
                    continue
                record = self._window_from_hash(data)
                if identifier is not None and record.identifier != identifier:
                    continue
                if blocked_only and not record.is_blocked:
                    continue
                records.append(record)
                if len(records) >= limit:
                    break
            return records
        except RedisError as e:
            raise self._unavailable("list windows", e) from e

    async def prune_windows(self, before: datetime) -> int:
        await self._ensure_connected()
        index = self._window_index_key()
        try:
            stale = await self._client.zrangebyscore(index, "-inf", f"({_epoch(before)}")
            if not stale:
                return 0
            pipe = self._client.pipeline()
            pipe.delete(*stale)
            pipe.zrem(index, *stale)
            await pipe.execute()
            return len(stale)
        except RedisError as e:
            raise self._unavailable("prune", e) from e

    # --- Escalation state ---

    async def get_block(self, identifier: str, endpoint: str) -> BlockState | None:
        await self._ensure_connected()
        try:
            data = await self._client.hgetall(self._block_key(identifier, endpoint))
        except RedisError as e:
            raise self._unavailable("HGETALL", e) from e
        if not data:
            return None
        return BlockState(
            identifier=identifier,
            endpoint=endpoint,
            consecutive_violations=int(data.get("consecutive_violations") or 0),
            blocked_until=_from_epoch(data.get("blocked_until")),
            last_violation_window=_from_epoch(data.get("last_violation_window")),
            last_seen_window=_from_epoch(data.get("last_seen_window")),
            version=int(data.get("version") or 0),
        )

    async def compare_and_set_block(self, state: BlockState, expected_version: int) -> bool:
        await self._ensure_connected()
        try:
            written = await self._scripts["block_cas"](
                keys=[self._block_key(state.identifier, state.endpoint), self._block_index_key()],
                args=[
                    expected_version,
                    state.consecutive_violations,
                    _epoch(state.blocked_until),
                    _epoch(state.last_violation_window),
                    _epoch(state.last_seen_window),
                    state.identifier,
                    state.endpoint,
                    _epoch(state.last_activity()) or 0,
                ],
            )
        except RedisError as e:
            raise self._unavailable("block update", e) from e
        return int(written) == 1

    async def prune_blocks(self, before: datetime) -> int:
        await self._ensure_connected()
        try:
            deleted = await self._scripts["block_prune"](
                keys=[self._block_index_key()], args=[_epoch(before)]
            )
        except RedisError as e:
            raise self._unavailable("block prune", e) from e
        return int(deleted)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self._client = None
                self._scripts = {}
                self._connected = False

    async def health_check(self) -> dict[str, Any]:
        """Return health status with Redis info."""
        try:
            await self._ensure_connected()
            info = await self._client.info("server")
            return {
                "backend": self.name,
                "connected": True,
                "redis_version": info.get("redis_version"),
            }
        except (RedisError, StoreUnavailable) as e:
            return {
                "backend": self.name,
                "connected": False,
                "error": str(e),
            }
