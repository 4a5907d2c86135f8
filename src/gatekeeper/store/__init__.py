"""Admission stores: the persistence seam with atomic counter primitives."""

from gatekeeper.store.base import (
    ANY_ENDPOINT,
    AdmissionStore,
    BlockState,
    IdentifierKind,
    QuotaIncrement,
    QuotaState,
    WindowKey,
    WindowRecord,
)
from gatekeeper.store.factory import (
    create_store,
    get_store,
    initialize_store,
    reset_store,
    shutdown_store,
)
from gatekeeper.store.memory import InMemoryStore
from gatekeeper.store.redis import RedisStore
from gatekeeper.store.sql import SqlStore

__all__ = [
    "ANY_ENDPOINT",
    "AdmissionStore",
    "BlockState",
    "IdentifierKind",
    "InMemoryStore",
    "QuotaIncrement",
    "QuotaState",
    "RedisStore",
    "SqlStore",
    "WindowKey",
    "WindowRecord",
    "create_store",
    "get_store",
    "initialize_store",
    "reset_store",
    "shutdown_store",
]
