# src/demand_refresh/application/use_cases/queue/enqueue_stale_refreshes.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Use case: Enqueue refresh jobs for demanded data that went stale.

Synopsis:
    Bridges the subscription registry and the job queue. For every
    ``(symbol, data_type)`` pair with at least one subscriber, a
    ``FreshnessCheck`` decides whether the stored data is stale; stale pairs
    get a job with the priority, retry budget and size estimate of their
    data type. Enqueue is idempotent while a job for the pair is pending or
    processing.

Entry points:
    * ``execute()``: periodic pass over all demanded pairs.
    * ``enqueue_for(symbol, data_types)``: event-driven check when a viewer
      starts watching a symbol, so the first refresh does not wait for the
      next periodic pass.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from demand_refresh.domain.interfaces.freshness import FreshnessCheck
from demand_refresh.domain.interfaces.repositories.job_queue_repository import (
    JobQueueRepository,
    NewJob,
)
from demand_refresh.domain.interfaces.repositories.subscription_repository import (
    SubscriptionRepository,
)
from demand_refresh.domain.services.clock import Clock, system_clock
from demand_refresh.domain.services.data_type_catalog import DataTypeCatalog
from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.observability.metrics import get_jobs_enqueued_total

logger = get_json_logger(__name__)


@dataclass(frozen=True)
class EnqueueResult:
    """Counts for one enqueue pass."""

    pairs: int
    stale: int
    enqueued: int
    already_queued: int


class RecentCompletionFreshnessCheck:
    """A pair is fresh when one of its jobs completed within the data type's TTL."""

    def __init__(
        self,
        *,
        jobs: JobQueueRepository,
        catalog: DataTypeCatalog,
        clock: Clock | None = None,
    ) -> None:
        self._jobs = jobs
        self._catalog = catalog
        self._clock = clock or system_clock

    async def is_stale(self, symbol: str, data_type: str) -> bool:
        last: datetime | None = await self._jobs.last_completed_at(symbol, data_type)
        if last is None:
            return True
        return self._clock() - last >= self._catalog.policy_for(data_type).ttl


class EnqueueStaleRefreshesUseCase:
    """Queue refresh jobs for stale demanded data."""

    def __init__(
        self,
        *,
        subscriptions: SubscriptionRepository,
        jobs: JobQueueRepository,
        freshness: FreshnessCheck,
        catalog: DataTypeCatalog,
    ) -> None:
        self._subscriptions = subscriptions
        self._jobs = jobs
        self._freshness = freshness
        self._catalog = catalog

    async def execute(self) -> EnqueueResult:
        """Check every demanded pair and enqueue the stale ones."""
        pairs = await self._subscriptions.list_demand_pairs()
        result = await self._enqueue_pairs(pairs, priority=None)
        logger.info(
            "enqueuer.done",
            extra={
                "extra": {
                    "pairs": result.pairs,
                    "stale": result.stale,
                    "enqueued": result.enqueued,
                    "already_queued": result.already_queued,
                }
            },
        )
        return result

    async def enqueue_for(
        self,
        symbol: str,
        data_types: Iterable[str],
        *,
        priority: int | None = None,
    ) -> EnqueueResult:
        """Check one symbol's data types and enqueue the stale ones.

        Args:
            symbol: Symbol a viewer just started watching.
            data_types: Data types the viewer needs.
            priority: Optional priority override (lower is more urgent).
        """
        normalized = symbol.strip().upper()
        if not normalized:
            raise ValueError("symbol must be non-empty")
        pairs = sorted({(normalized, dt) for dt in data_types if dt})
        result = await self._enqueue_pairs(pairs, priority=priority)
        logger.info(
            "enqueuer.symbol_checked",
            extra={
                "extra": {
                    "symbol": normalized,
                    "stale": result.stale,
                    "enqueued": result.enqueued,
                }
            },
        )
        return result

    async def _enqueue_pairs(
        self,
        pairs: Iterable[tuple[str, str]],
        *,
        priority: int | None,
    ) -> EnqueueResult:
        total = stale = enqueued = already = 0
        for symbol, data_type in pairs:
            total += 1
            if not await self._freshness.is_stale(symbol, data_type):
                continue
            stale += 1
            policy = self._catalog.policy_for(data_type)
            job = await self._jobs.enqueue(
                NewJob(
                    symbol=symbol,
                    data_type=data_type,
                    priority=policy.priority if priority is None else priority,
                    max_retries=policy.max_retries,
                    estimated_data_size_bytes=policy.estimated_size_bytes,
                )
            )
            if job is None:
                already += 1
                continue
            enqueued += 1
            get_jobs_enqueued_total().labels(data_type=data_type).inc()
        return EnqueueResult(pairs=total, stale=stale, enqueued=enqueued, already_queued=already)
