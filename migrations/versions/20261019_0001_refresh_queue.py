# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Create the subscription registry and the refresh job queue.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

This migration:
  * Creates refresh_subscriptions, unique on (user_id, symbol, data_type).
  * Creates refresh_jobs with:
      - a partial index on (priority, created_at) for pending rows (claim path),
      - a partial unique index on (symbol, data_type) for pending/processing
        rows (idempotent enqueue),
      - (status, processed_at) and (status, claimed_at) indexes for the
        monitor and the stuck-job reclaimer.
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from demand_refresh.infrastructure.database.models.base import DEFAULT_DB_SCHEMA

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

_NOW = sa.text("now()")


def upgrade() -> None:
    """Apply the migration."""
    schema = DEFAULT_DB_SCHEMA
    if schema != "public":
        op.get_bind().exec_driver_sql(f'CREATE SCHEMA IF NOT EXISTS "{schema}"')

    op.create_table(
        "refresh_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("symbol", sa.String(length=32), nullable=False),
        sa.Column("data_type", sa.String(length=64), nullable=False),
        sa.Column("subscribed_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.PrimaryKeyConstraint("id", name="pk_refresh_subscriptions"),
        sa.UniqueConstraint(
            "user_id",
            "symbol",
            "data_type",
            name="uq_refresh_subscriptions_user_symbol_type",
        ),
        sa.CheckConstraint(
            "last_seen_at >= subscribed_at",
            name="ck_refresh_subscriptions_seen_after_subscribed",
        ),
        schema=schema,
    )
    op.create_index(
        "ix_refresh_subscriptions_last_seen_at",
        "refresh_subscriptions",
        ["last_seen_at"],
        schema=schema,
    )
    op.create_index(
        "ix_refresh_subscriptions_symbol_type",
        "refresh_subscriptions",
        ["symbol", "data_type"],
        schema=schema,
    )

    op.create_table(
        "refresh_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("symbol", sa.String(length=32), nullable=False),
        sa.Column("data_type", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column(
            "estimated_data_size_bytes", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.Column("actual_data_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column(
            "job_metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.PrimaryKeyConstraint("id", name="pk_refresh_jobs"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_refresh_jobs_status_valid",
        ),
        sa.CheckConstraint(
            "retry_count >= 0 AND max_retries >= 0",
            name="ck_refresh_jobs_retry_counts_non_negative",
        ),
        schema=schema,
    )
    op.create_index(
        "ix_refresh_jobs_claimable",
        "refresh_jobs",
        ["priority", "created_at"],
        postgresql_where=sa.text("status = 'pending'"),
        schema=schema,
    )
    op.create_index(
        "uq_refresh_jobs_in_flight",
        "refresh_jobs",
        ["symbol", "data_type"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
        schema=schema,
    )
    op.create_index(
        "ix_refresh_jobs_status_processed_at",
        "refresh_jobs",
        ["status", "processed_at"],
        schema=schema,
    )
    op.create_index(
        "ix_refresh_jobs_status_claimed_at",
        "refresh_jobs",
        ["status", "claimed_at"],
        schema=schema,
    )


def downgrade() -> None:
    """Revert the migration."""
    schema = DEFAULT_DB_SCHEMA
    for name in (
        "ix_refresh_jobs_status_claimed_at",
        "ix_refresh_jobs_status_processed_at",
        "uq_refresh_jobs_in_flight",
        "ix_refresh_jobs_claimable",
    ):
        op.drop_index(name, table_name="refresh_jobs", schema=schema)
    op.drop_table("refresh_jobs", schema=schema)

    op.drop_index(
        "ix_refresh_subscriptions_symbol_type", table_name="refresh_subscriptions", schema=schema
    )
    op.drop_index(
        "ix_refresh_subscriptions_last_seen_at", table_name="refresh_subscriptions", schema=schema
    )
    op.drop_table("refresh_subscriptions", schema=schema)
