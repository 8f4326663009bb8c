# src/demand_refresh/application/use_cases/registry/reconcile_subscriptions.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Use case: Reconcile the subscription registry with live presence.

Synopsis:
    Treats the presence snapshot as the source of truth for current demand.
    Every demanded ``(user_id, symbol, data_type)`` is upserted (which advances
    ``last_seen_at``) and every registry row absent from the snapshot is
    deleted. Replaying an unchanged snapshot leaves the registry unchanged
    apart from ``last_seen_at``.

Responsibilities:
    * Fetch the snapshot; a failed fetch aborts the pass before any write.
    * Upsert the needed-set, then delete rows outside it. Deleting after the
      upsert means a row created by this pass is never removed by it.
    * An empty snapshot that was fetched successfully clears the registry.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from demand_refresh.domain.interfaces.gateways.presence_gateway import PresenceGateway
from demand_refresh.domain.interfaces.repositories.subscription_repository import (
    SubscriptionRepository,
)
from demand_refresh.domain.services.clock import Clock, system_clock
from demand_refresh.domain.services.reconciliation import flatten_snapshot
from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.observability.metrics import get_reconcile_changes_total

logger = get_json_logger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    topics: int
    needed: int
    upserted: int
    deleted: int
    duration_ms: int


class ReconcileSubscriptionsUseCase:
    """Bring the registry in line with one presence snapshot."""

    def __init__(
        self,
        *,
        presence: PresenceGateway,
        subscriptions: SubscriptionRepository,
        clock: Clock | None = None,
    ) -> None:
        self._presence = presence
        self._subscriptions = subscriptions
        self._clock = clock or system_clock

    async def execute(self) -> ReconcileResult:
        """Run one pass.

        Returns:
            ReconcileResult: Counts for the pass.

        Raises:
            PresenceUnreachableError: If the snapshot could not be fetched. The
                registry is not modified in that case.
        """
        started = time.perf_counter()
        snapshot = await self._presence.fetch_snapshot()
        needed = flatten_snapshot(snapshot)

        upserted = 0
        if needed:
            upserted = await self._subscriptions.upsert_many(needed, seen_at=self._clock())

        existing = await self._subscriptions.list_keys()
        to_delete = existing - needed
        deleted = await self._subscriptions.delete_keys(to_delete) if to_delete else 0

        metric = get_reconcile_changes_total()
        metric.labels(action="upsert").inc(upserted)
        metric.labels(action="delete").inc(deleted)

        result = ReconcileResult(
            topics=len(snapshot.topics),
            needed=len(needed),
            upserted=upserted,
            deleted=deleted,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        logger.info(
            "reconcile.done",
            extra={
                "extra": {
                    "topics": result.topics,
                    "needed": result.needed,
                    "upserted": result.upserted,
                    "deleted": result.deleted,
                    "duration_ms": result.duration_ms,
                }
            },
        )
        return result
