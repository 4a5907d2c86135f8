"""Store factory for creating admission stores based on configuration."""

import logging
from typing import Any

from gatekeeper.config import settings
from gatekeeper.errors import StoreUnavailable
from gatekeeper.store.base import AdmissionStore
from gatekeeper.store.memory import InMemoryStore
from gatekeeper.store.redis import RedisStore
from gatekeeper.store.sql import SqlStore

logger = logging.getLogger(__name__)

# Global store instance
_store_instance: AdmissionStore | None = None


def create_store(
    backend: str | None = None,
    **kwargs: Any,
) -> AdmissionStore:
    """
    Create an admission store instance.

    Args:
        backend: Backend type ("memory", "sql" or "redis"), defaults to config
        **kwargs: Additional arguments passed to the backend

    Returns:
        AdmissionStore instance

    Raises:
        ValueError: If backend type is unknown or misconfigured
    """
    backend_type = backend or settings.store_backend

    if backend_type == "memory":
        logger.warning(
            "Using in-memory admission store: counters are not shared "
            "between processes. Use the sql or redis backend when scaling out."
        )
        return InMemoryStore()

    elif backend_type == "sql":
        return SqlStore.from_url(kwargs.get("database_url", settings.database_url))

    elif backend_type == "redis":
        url = kwargs.get("url", settings.redis_url)
        if not url:
            raise ValueError("Redis store selected but REDIS_URL is not configured")

        timeout = settings.store_timeout_ms / 1000
        return RedisStore(
            url=url,
            prefix=kwargs.get("prefix", settings.redis_prefix),
            retention_seconds=kwargs.get(
                "retention_seconds", settings.window_retention_days * 86400
            ),
            max_connections=kwargs.get("max_connections", 10),
            socket_timeout=kwargs.get("socket_timeout", timeout),
        )

    else:
        raise ValueError(f"Unknown store backend: {backend_type}")


def get_store() -> AdmissionStore:
    """
    Get the global store instance.

    Creates the store on first access using configuration settings.

    Returns:
        AdmissionStore instance
    """
    global _store_instance

    if _store_instance is None:
        _store_instance = create_store()
        logger.info(f"Initialized {_store_instance.name} admission store")

    return _store_instance


async def initialize_store() -> AdmissionStore:
    """
    Initialize the global store and establish connections.

    Call this during application startup. Connection failures are logged
    and left to the admission fail policy; the store reconnects lazily.

    Returns:
        AdmissionStore instance
    """
    store = get_store()
    try:
        await store.connect()
    except StoreUnavailable as e:
        logger.warning(f"Admission store {store.name} not ready at startup: {e}")
    return store


async def shutdown_store() -> None:
    """
    Shutdown the global store and close connections.

    Call this during application shutdown for clean teardown.
    """
    global _store_instance

    if _store_instance is not None:
        await _store_instance.close()
        _store_instance = None
        logger.info("Admission store shutdown complete")


def reset_store() -> None:
    """
    Reset the global store instance.

    Useful for testing or when configuration changes.
    """
    global _store_instance
    _store_instance = None
