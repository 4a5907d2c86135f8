"""SQLAlchemy models for the gatekeeper database."""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import Boolean, Date, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.db.base import Base


class QuotaRecord(Base):
    """Daily usage counters of one identity. Never deleted."""

    __tablename__ = "quota_states"

    identity: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    queries_today: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_queries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_query_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class RateLimitWindow(Base):
    """Request count of an identifier/endpoint pair in one fixed window."""

    __tablename__ = "rate_limits"

    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    identifier_type: Mapped[str] = mapped_column(String(16), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    requests_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Stored as naive UTC
    window_start: Mapped[datetime] = mapped_column(nullable=False)
    window_end: Mapped[datetime] = mapped_column(nullable=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    block_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index(
            "ix_rate_limits_window",
            "identifier",
            "identifier_type",
            "endpoint",
            "window_start",
            unique=True,
        ),
        Index("ix_rate_limits_window_end", "window_end"),
        Index("ix_rate_limits_is_blocked", "is_blocked"),
    )


class BlockRecord(Base):
    """Escalation state of an identifier/endpoint pair."""

    __tablename__ = "block_states"

    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    consecutive_violations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    blocked_until: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_violation_window: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_seen_window: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("ix_block_states_key", "identifier", "endpoint", unique=True),
    )
