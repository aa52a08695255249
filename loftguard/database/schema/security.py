"""Security-related database models for rate limiting, blocking and auditing."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class RateLimitCounter(Base):
    """Fixed-window request counter, one row per endpoint and identifier.

    Rows are mutated only through a single upsert statement that either
    increments `hits` or resets the window, so concurrent requests against
    the same key never lose an update. Rows whose window started before the
    retention horizon are swept periodically.
    """
    __tablename__ = "rate_limit_counter"

    key: Mapped[str] = mapped_column(
        String(320),
        primary_key=True,
        comment="Counter key: '<endpoint>:<identifier>'",
    )
    endpoint: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Policy name the counter belongs to (login, bookingCreate, ...)",
    )
    identifier: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Rate limited subject: client IP, user id, or composite key",
    )
    hits: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Requests counted in the current window",
    )
    max_requests: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Policy limit in force when the window opened",
    )
    window_ms: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Policy window length in milliseconds",
    )
    window_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Start of the current window (UTC)",
    )
    reset_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="window_start + window_ms; next hit at or after this resets the window",
    )

    __table_args__ = (
        Index("ix_rate_limit_counter_identifier", "identifier", "window_start"),
        Index("ix_rate_limit_counter_window_start", "window_start"),
    )


class RateLimitWindow(Base):
    """A closed counter window, copied out of `rate_limit_counter` by the
    same upsert that resets the live row.

    Lets activity scoring see every window in the lookback, not only the
    current one per key.
    """
    __tablename__ = "rate_limit_window"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
    )
    endpoint: Mapped[str] = mapped_column(String(64), nullable=False)
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    hits: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Requests counted when the window closed",
    )
    max_requests: Mapped[int] = mapped_column(Integer, nullable=False)
    window_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reset_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_rate_limit_window_identifier", "identifier", "window_start"),
        Index("ix_rate_limit_window_window_start", "window_start"),
    )


class SecurityBlock(Base):
    """Temporary block of an identifier.

    Entries are append-only: overlapping blocks for the same identifier are
    allowed and the identifier stays blocked while any of them is active.
    """
    __tablename__ = "security_block"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
    )
    identifier: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Blocked identifier (IP address, user id, ...)",
    )
    reason: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Human-readable reason for the block",
    )
    blocked_by: Mapped[str | None] = mapped_column(
        String(64),
        comment="Admin user id that created the block; NULL when automatic",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Block is active while now < expires_at",
    )

    __table_args__ = (
        Index("ix_security_block_identifier_expires", "identifier", "expires_at"),
        Index("ix_security_block_expires", "expires_at"),
    )


class SecurityAuditLog(Base):
    """Append-only record of security-relevant events."""
    __tablename__ = "security_audit_log"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
    )
    actor_id: Mapped[str | None] = mapped_column(
        String(255),
        comment="User id or client identifier that triggered the event",
    )
    action: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="api_access, access_denied, security_alert, identifier_blocked, ...",
    )
    resource_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    resource_id: Mapped[str | None] = mapped_column(
        String(512),
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        JSONB,
        comment="Request id, client ip, risk score and other event details",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_security_audit_log_actor", "actor_id", "created_at"),
        Index("ix_security_audit_log_action", "action", "created_at"),
    )


__all__ = [
    "RateLimitCounter",
    "RateLimitWindow",
    "SecurityAuditLog",
    "SecurityBlock",
]
