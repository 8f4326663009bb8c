# src/demand_refresh/infrastructure/database/models/refresh_queue.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Refresh Queue Models.

Purpose:
    SQLAlchemy models for the subscription registry and the priority refresh
    job queue.

Layer:
    infrastructure

Notes:
    * ``refresh_subscriptions`` is unique on ``(user_id, symbol, data_type)``.
    * ``refresh_jobs`` carries a partial unique index on
      ``(symbol, data_type)`` for in-flight rows (pending/processing), which
      makes enqueue idempotent with ``ON CONFLICT DO NOTHING``.
    * A partial index on ``(priority, created_at)`` for pending rows serves
      the claim query.
    * Domain contracts live in
      ``demand_refresh.domain.interfaces.repositories``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from demand_refresh.domain.entities.job import RefreshJob
from demand_refresh.domain.entities.subscription import Subscription
from demand_refresh.domain.enums.job import JobStatus
from demand_refresh.infrastructure.database.models.base import (
    Base,
    IdentityMixin,
    JSONDocument,
    TimestampMixin,
    now_utc,
    table_args,
)

IN_FLIGHT_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class RefreshSubscription(IdentityMixin, Base):
    """Persistence model for the subscription registry.

    Attributes:
        id: Surrogate UUID primary key.
        user_id: Viewer identifier.
        symbol: Upper-case symbol.
        data_type: Data kind the viewer needs.
        subscribed_at: First observation (UTC).
        last_seen_at: Most recent observation (UTC).
    """

    __tablename__ = "refresh_subscriptions"

    user_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    symbol: Mapped[str] = mapped_column(String(length=32), nullable=False)
    data_type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    subscribed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=now_utc,
        server_default=func.now(),
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=now_utc,
        server_default=func.now(),
    )

    __table_args__ = table_args(  # type: ignore[assignment]
        UniqueConstraint(
            "user_id",
            "symbol",
            "data_type",
            name="uq_refresh_subscriptions_user_symbol_type",
        ),
        CheckConstraint("last_seen_at >= subscribed_at", name="seen_after_subscribed"),
        Index("ix_refresh_subscriptions_last_seen_at", "last_seen_at"),
        Index("ix_refresh_subscriptions_symbol_type", "symbol", "data_type"),
    )

    def to_entity(self) -> Subscription:
        return Subscription(
            user_id=self.user_id,
            symbol=self.symbol,
            data_type=self.data_type,
            subscribed_at=self.subscribed_at,
            last_seen_at=self.last_seen_at,
        )


class RefreshJobModel(IdentityMixin, TimestampMixin, Base):
    """Persistence model for one refresh job.

    Attributes:
        symbol: Upper-case symbol to refresh.
        data_type: Data kind to refresh.
        status: ``pending`` | ``processing`` | ``completed`` | ``failed``.
        priority: Lower is more urgent.
        retry_count: Failed attempts recorded so far.
        max_retries: Failed attempts tolerated before terminal failure.
        estimated_data_size_bytes: Expected payload size.
        actual_data_size_bytes: Size reported by the handler on completion.
        job_metadata: Free-form handler arguments.
        error_message: Last failure message.
        error_code: Last failure category (e.g. ``STALE_DATA_REJECTED``).
        claimed_at: Lease start while processing.
        claimed_by: Worker id holding the lease.
        processed_at: Time the job reached a terminal state.
        next_attempt_at: Earliest time a pending job may be claimed.
    """

    __tablename__ = "refresh_jobs"

    symbol: Mapped[str] = mapped_column(String(length=32), nullable=False)
    data_type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default=JobStatus.PENDING.value,
        server_default=JobStatus.PENDING.value,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, server_default="3"
    )
    estimated_data_size_bytes: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default="0"
    )
    actual_data_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    job_metadata: Mapped[dict[str, Any]] = mapped_column(
        JSONDocument, nullable=False, default=dict
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=now_utc,
        server_default=func.now(),
    )

    __table_args__ = table_args(  # type: ignore[assignment]
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="status_valid",
        ),
        CheckConstraint("retry_count >= 0 AND max_retries >= 0", name="retry_counts_non_negative"),
        Index(
            "ix_refresh_jobs_claimable",
            "priority",
            "created_at",
            postgresql_where=text("status = 'pending'"),
        ),
        Index(
            "uq_refresh_jobs_in_flight",
            "symbol",
            "data_type",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
        Index("ix_refresh_jobs_status_processed_at", "status", "processed_at"),
        Index("ix_refresh_jobs_status_claimed_at", "status", "claimed_at"),
    )

    def to_entity(self) -> RefreshJob:
        return RefreshJob(
            id=self.id if isinstance(self.id, uuid.UUID) else uuid.UUID(str(self.id)),
            symbol=self.symbol,
            data_type=self.data_type,
            status=JobStatus(self.status),
            priority=self.priority,
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            created_at=self.created_at,
            estimated_data_size_bytes=self.estimated_data_size_bytes,
            job_metadata=dict(self.job_metadata or {}),
            updated_at=self.updated_at,
            actual_data_size_bytes=self.actual_data_size_bytes,
            error_message=self.error_message,
            error_code=self.error_code,
            claimed_at=self.claimed_at,
            claimed_by=self.claimed_by,
            processed_at=self.processed_at,
            next_attempt_at=self.next_attempt_at,
        )
