"""Database package for the gatekeeper."""

from gatekeeper.db.base import Base
from gatekeeper.db.manager import DatabaseManager
from gatekeeper.db.models import BlockRecord, QuotaRecord, RateLimitWindow

__all__ = [
    "Base",
    "DatabaseManager",
    "QuotaRecord",
    "RateLimitWindow",
    "BlockRecord",
]
