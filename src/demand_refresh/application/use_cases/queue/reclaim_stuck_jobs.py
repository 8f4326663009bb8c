# src/demand_refresh/application/use_cases/queue/reclaim_stuck_jobs.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Use case: Return expired ``processing`` leases to ``pending``.

A job still ``processing`` after the lease timeout belongs to a worker that
crashed or was cut off by its invocation timeout. The job goes back to
``pending`` with its ``retry_count`` unchanged; the attempt is not charged to
the job.
"""

from __future__ import annotations

from datetime import timedelta

from demand_refresh.domain.interfaces.repositories.job_queue_repository import (
    JobQueueRepository,
)
from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.observability.metrics import get_jobs_reclaimed_total

logger = get_json_logger(__name__)


class ReclaimStuckJobsUseCase:
    """Reset jobs whose lease expired."""

    def __init__(self, *, jobs: JobQueueRepository, lease_timeout: timedelta) -> None:
        if lease_timeout <= timedelta(0):
            raise ValueError("lease_timeout must be positive")
        self._jobs = jobs
        self._lease_timeout = lease_timeout

    async def execute(self) -> int:
        """Run one reclamation pass and return the number of jobs reclaimed."""
        reclaimed = await self._jobs.reclaim_stuck(self._lease_timeout)
        if reclaimed:
            get_jobs_reclaimed_total().inc(reclaimed)
            logger.warning(
                "reclaimer.jobs_reclaimed",
                extra={
                    "extra": {
                        "reclaimed": reclaimed,
                        "lease_timeout_s": int(self._lease_timeout.total_seconds()),
                    }
                },
            )
        else:
            logger.debug("reclaimer.nothing_stuck")
        return reclaimed
