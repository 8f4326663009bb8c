# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Domain-facing interface for the subscription registry.

The registry stores one row per ``(user_id, symbol, data_type)`` with
``subscribed_at``/``last_seen_at`` timestamps. Every method is a single atomic
statement (or transaction) against the backing store; callers compose them
without holding locks across calls.

Notes:
    The SQLAlchemy adapter and the in-memory adapter in
    ``adapters/repositories`` both satisfy this protocol.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from demand_refresh.domain.entities.presence import DemandKey
from demand_refresh.domain.entities.subscription import Subscription


class SubscriptionRepository(Protocol):
    """Domain-level contract for the subscription registry."""

    async def upsert_many(self, keys: Iterable[DemandKey], *, seen_at: datetime) -> int:
        """Insert missing keys and advance ``last_seen_at`` on existing ones.

        New rows get ``subscribed_at = last_seen_at = seen_at``.

        Returns:
            Number of keys written.
        """
        raise NotImplementedError

    async def list_keys(self) -> set[DemandKey]:
        """Return the keys of every registry row."""
        raise NotImplementedError

    async def list_all(self) -> list[Subscription]:
        """Return every registry row."""
        raise NotImplementedError

    async def delete_keys(self, keys: Iterable[DemandKey]) -> int:
        """Delete the given keys; missing keys are ignored.

        Returns:
            Number of rows removed.
        """
        raise NotImplementedError

    async def delete_stale(self, cutoff: datetime) -> int:
        """Delete rows whose ``last_seen_at`` is strictly older than ``cutoff``."""
        raise NotImplementedError

    async def list_demand_pairs(self) -> list[tuple[str, str]]:
        """Return the distinct ``(symbol, data_type)`` pairs with any subscriber."""
        raise NotImplementedError
