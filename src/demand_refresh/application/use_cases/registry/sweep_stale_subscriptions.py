# src/demand_refresh/application/use_cases/registry/sweep_stale_subscriptions.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Use case: Sweep stale subscriptions and expired job history.

Deletes registry rows whose ``last_seen_at`` is strictly older than
``now - staleness_threshold``. This backstops reconciliation for viewers that
vanished without withdrawing while the broadcast kept serving their entry.

When a retention window is configured, the same pass deletes terminal jobs
processed before ``now - job_retention``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from demand_refresh.domain.interfaces.repositories.job_queue_repository import (
    JobQueueRepository,
)
from demand_refresh.domain.interfaces.repositories.subscription_repository import (
    SubscriptionRepository,
)
from demand_refresh.domain.services.clock import Clock, system_clock
from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.observability.metrics import get_sweeper_deleted_total

logger = get_json_logger(__name__)


@dataclass(frozen=True)
class SweepResult:
    subscriptions_deleted: int
    jobs_purged: int


class SweepStaleSubscriptionsUseCase:
    """Remove registry rows that stopped heart-beating."""

    def __init__(
        self,
        *,
        subscriptions: SubscriptionRepository,
        staleness_threshold: timedelta,
        jobs: JobQueueRepository | None = None,
        job_retention: timedelta | None = None,
        clock: Clock | None = None,
    ) -> None:
        if staleness_threshold <= timedelta(0):
            raise ValueError("staleness_threshold must be positive")
        self._subscriptions = subscriptions
        self._staleness_threshold = staleness_threshold
        self._jobs = jobs
        self._job_retention = job_retention
        self._clock = clock or system_clock

    async def execute(self) -> SweepResult:
        now = self._clock()
        deleted = await self._subscriptions.delete_stale(now - self._staleness_threshold)

        purged = 0
        if self._jobs is not None and self._job_retention is not None:
            purged = await self._jobs.purge_terminal(now - self._job_retention)

        metric = get_sweeper_deleted_total()
        metric.labels(kind="subscription").inc(deleted)
        metric.labels(kind="job").inc(purged)
        logger.info(
            "sweeper.done",
            extra={
                "extra": {
                    "subscriptions_deleted": deleted,
                    "jobs_purged": purged,
                    "staleness_threshold_s": int(self._staleness_threshold.total_seconds()),
                }
            },
        )
        return SweepResult(subscriptions_deleted=deleted, jobs_purged=purged)
