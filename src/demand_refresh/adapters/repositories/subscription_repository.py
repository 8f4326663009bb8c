# src/demand_refresh/adapters/repositories/subscription_repository.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Subscription Registry Repository (SQLAlchemy).

Purpose:
    PostgreSQL implementation of ``SubscriptionRepository``.

Layer:
    adapters

Notes:
    * Upserts use ``INSERT ... ON CONFLICT (user_id, symbol, data_type) DO
      UPDATE`` and only ever move ``last_seen_at`` forward.
    * Deletes by key are chunked to keep statements bounded.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from itertools import islice

from sqlalchemy import delete, func, select, tuple_
from sqlalchemy.dialects.postgresql import Insert
from sqlalchemy.dialects.postgresql import insert as pg_insert

from demand_refresh.adapters.repositories.base_repository import BaseRepository
from demand_refresh.domain.entities.presence import DemandKey
from demand_refresh.domain.entities.subscription import Subscription
from demand_refresh.infrastructure.database.models.refresh_queue import RefreshSubscription

_CHUNK_SIZE = 500


def _chunks(keys: Iterable[DemandKey], size: int = _CHUNK_SIZE) -> Iterable[list[DemandKey]]:
    it = iter(keys)
    while chunk := list(islice(it, size)):
        yield chunk


def build_upsert_statement(keys: list[DemandKey], seen_at: datetime) -> Insert:
    """Return the ``INSERT ... ON CONFLICT DO UPDATE`` statement for ``keys``."""
    stmt = pg_insert(RefreshSubscription).values(
        [
            {
                "id": uuid.uuid4(),
                "user_id": k.user_id,
                "symbol": k.symbol,
                "data_type": k.data_type,
                "subscribed_at": seen_at,
                "last_seen_at": seen_at,
            }
            for k in keys
        ]
    )
    return stmt.on_conflict_do_update(
        index_elements=[
            RefreshSubscription.user_id,
            RefreshSubscription.symbol,
            RefreshSubscription.data_type,
        ],
        set_={
            "last_seen_at": func.greatest(
                RefreshSubscription.last_seen_at, stmt.excluded.last_seen_at
            )
        },
    )


class SqlSubscriptionRepository(BaseRepository[RefreshSubscription]):
    """SQLAlchemy-backed subscription registry."""

    async def upsert_many(self, keys: Iterable[DemandKey], *, seen_at: datetime) -> int:
        written = 0
        async with self.transaction() as session:
            for chunk in _chunks(sorted(set(keys), key=_sort_key)):
                await session.execute(build_upsert_statement(chunk, seen_at))
                written += len(chunk)
        return written

    async def list_keys(self) -> set[DemandKey]:
        stmt = select(
            RefreshSubscription.user_id,
            RefreshSubscription.symbol,
            RefreshSubscription.data_type,
        )
        async with self.transaction() as session:
            rows = (await session.execute(stmt)).all()
        return {DemandKey(r.user_id, r.symbol, r.data_type) for r in rows}

    async def list_all(self) -> list[Subscription]:
        stmt = select(RefreshSubscription).order_by(
            RefreshSubscription.symbol,
            RefreshSubscription.data_type,
            RefreshSubscription.user_id,
        )
        async with self.transaction() as session:
            models = await self.fetch_all(session, stmt)
        return [m.to_entity() for m in models]

    async def delete_keys(self, keys: Iterable[DemandKey]) -> int:
        deleted = 0
        key_cols = tuple_(
            RefreshSubscription.user_id,
            RefreshSubscription.symbol,
            RefreshSubscription.data_type,
        )
        async with self.transaction() as session:
            for chunk in _chunks(keys):
                stmt = delete(RefreshSubscription).where(
                    key_cols.in_([(k.user_id, k.symbol, k.data_type) for k in chunk])
                )
                result = await session.execute(stmt)
                deleted += int(result.rowcount or 0)  # type: ignore[attr-defined]
        return deleted

    async def delete_stale(self, cutoff: datetime) -> int:
        stmt = delete(RefreshSubscription).where(RefreshSubscription.last_seen_at < cutoff)
        async with self.transaction() as session:
            result = await session.execute(stmt)
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def list_demand_pairs(self) -> list[tuple[str, str]]:
        stmt = (
            select(RefreshSubscription.symbol, RefreshSubscription.data_type)
            .distinct()
            .order_by(RefreshSubscription.symbol, RefreshSubscription.data_type)
        )
        async with self.transaction() as session:
            rows = (await session.execute(stmt)).all()
        return [(r.symbol, r.data_type) for r in rows]


def _sort_key(k: DemandKey) -> tuple[str, str, str]:
    # Stable lock order across concurrent upserts.
    return (k.user_id, k.symbol, k.data_type)
