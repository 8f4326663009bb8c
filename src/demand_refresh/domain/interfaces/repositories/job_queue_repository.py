# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Domain-facing interface for the priority refresh-job queue.

This module defines:

* NewJob: write-side representation of a job to enqueue.
* ResolvedJobCounts / StuckJobsSummary: aggregate rows used by monitoring.
* JobQueueRepository: protocol describing the queue operations.

Notes:
    Claiming must be atomic with respect to concurrent callers: two
    concurrent ``claim_batch`` calls never return the same job. Every other
    operation is a single-row update. ``complete``, ``fail`` and
    ``reset_immediate`` only apply to a job that is still ``processing``, so
    a worker whose lease was reclaimed cannot overwrite a later resolution.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import UUID

from demand_refresh.domain.entities.job import RefreshJob
from demand_refresh.domain.enums.job import JobStatus


@dataclass(frozen=True)
class NewJob:
    """Write-side representation of a refresh job.

    Attributes:
        symbol: Upper-case symbol to refresh.
        data_type: Data kind to refresh.
        priority: Lower is more urgent.
        max_retries: Handler failures tolerated before terminal failure.
        estimated_data_size_bytes: Expected payload size.
        job_metadata: Free-form handler arguments.
    """

    symbol: str
    data_type: str
    priority: int
    max_retries: int
    estimated_data_size_bytes: int = 0
    job_metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedJobCounts:
    """Jobs that reached a terminal state inside a window."""

    completed: int
    failed: int
    stale_rejected: int = 0


@dataclass(frozen=True)
class StuckJobsSummary:
    """Processing jobs whose lease has expired."""

    count: int
    data_types: tuple[str, ...] = ()


class JobQueueRepository(Protocol):
    """Domain-level contract for the refresh queue."""

    async def enqueue(self, job: NewJob) -> RefreshJob | None:
        """Insert a pending job unless one is already pending/processing.

        Returns:
            The inserted job, or ``None`` when an in-flight job for the same
            ``(symbol, data_type)`` already exists.
        """
        raise NotImplementedError

    async def claim_batch(
        self,
        batch_size: int,
        max_priority: int,
        *,
        worker_id: str | None = None,
    ) -> list[RefreshJob]:
        """Atomically claim up to ``batch_size`` due pending jobs.

        Jobs are ordered by ``priority`` then ``created_at`` and moved to
        ``processing`` with ``claimed_at``/``claimed_by`` set.
        """
        raise NotImplementedError

    async def complete(
        self,
        job_id: UUID,
        data_size_bytes: int,
        *,
        worker_id: str | None = None,
    ) -> None:
        """Mark a held job completed and record its actual payload size.

        Raises:
            JobNotFoundError: If the job does not exist.
            LeaseLostError: If the job is not held (see ``fail``).
        """
        raise NotImplementedError

    async def fail(
        self,
        job_id: UUID,
        error_message: str,
        *,
        error_code: str | None = None,
        terminal: bool = False,
        worker_id: str | None = None,
    ) -> JobStatus:
        """Record a failed attempt on a held job.

        Below ``max_retries`` the job returns to ``pending`` with
        ``retry_count + 1`` and a backoff delay; otherwise, or when
        ``terminal`` is set, it becomes terminal ``failed``.

        A job is held while it is ``processing`` and, when ``worker_id`` is
        given, claimed by that worker. Writes to a job that is not held are
        not applied.

        Returns:
            The resulting status (``PENDING`` or ``FAILED``).

        Raises:
            JobNotFoundError: If the job does not exist.
            LeaseLostError: If the job is not held.
        """
        raise NotImplementedError

    async def reset_immediate(self, job_id: UUID, *, worker_id: str | None = None) -> None:
        """Return a held job to ``pending`` without touching ``retry_count``.

        Raises:
            JobNotFoundError: If the job does not exist.
            LeaseLostError: If the job is not held (see ``fail``).
        """
        raise NotImplementedError

    async def reclaim_stuck(self, lease_timeout: timedelta) -> int:
        """Return expired ``processing`` leases to ``pending``.

        Returns:
            Number of jobs reclaimed.
        """
        raise NotImplementedError

    async def get(self, job_id: UUID) -> RefreshJob | None:
        """Return a job by id, if present."""
        raise NotImplementedError

    async def count_resolved(self, since: datetime) -> ResolvedJobCounts:
        """Count jobs completed/failed with ``processed_at >= since``."""
        raise NotImplementedError

    async def sum_completed_bytes(self, since: datetime) -> int:
        """Sum ``actual_data_size_bytes`` of jobs completed since ``since``."""
        raise NotImplementedError

    async def stuck_jobs(self, lease_timeout: timedelta) -> StuckJobsSummary:
        """Summarize ``processing`` jobs claimed longer ago than ``lease_timeout``."""
        raise NotImplementedError

    async def last_completed_at(self, symbol: str, data_type: str) -> datetime | None:
        """Return the latest ``processed_at`` of a completed job for the pair."""
        raise NotImplementedError

    async def purge_terminal(self, older_than: datetime) -> int:
        """Delete completed/failed jobs processed before ``older_than``."""
        raise NotImplementedError
