# src/demand_refresh/adapters/repositories/in_memory.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
In-memory registry and queue repositories.

Purpose:
    Concurrency-safe implementations of ``SubscriptionRepository`` and
    ``JobQueueRepository`` for local development and hermetic tests.

Layer:
    adapters

Notes:
    A single ``asyncio.Lock`` per repository serializes every operation,
    which gives the same per-operation atomicity as the row-level locking of
    the PostgreSQL implementations (including disjoint concurrent claims).
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from uuid import UUID

from demand_refresh.domain.entities.job import RefreshJob
from demand_refresh.domain.entities.presence import DemandKey
from demand_refresh.domain.entities.subscription import Subscription
from demand_refresh.domain.enums.job import JobStatus
from demand_refresh.domain.exceptions.queue import (
    JobNotFoundError,
    LeaseLostError,
    StaleDataRejectedError,
)
from demand_refresh.domain.interfaces.repositories.job_queue_repository import (
    NewJob,
    ResolvedJobCounts,
    StuckJobsSummary,
)
from demand_refresh.domain.services.backoff import BackoffSchedule
from demand_refresh.domain.services.clock import Clock, system_clock


class InMemorySubscriptionRepository:
    """Subscription registry held in a dict keyed by ``DemandKey``."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._rows: dict[DemandKey, Subscription] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or system_clock

    async def upsert_many(self, keys: Iterable[DemandKey], *, seen_at: datetime) -> int:
        written = 0
        async with self._lock:
            for key in set(keys):
                row = self._rows.get(key)
                if row is None:
                    self._rows[key] = Subscription(
                        user_id=key.user_id,
                        symbol=key.symbol,
                        data_type=key.data_type,
                        subscribed_at=seen_at,
                        last_seen_at=seen_at,
                    )
                elif seen_at > row.last_seen_at:
                    self._rows[key] = replace(row, last_seen_at=seen_at)
                written += 1
        return written

    async def list_keys(self) -> set[DemandKey]:
        async with self._lock:
            return set(self._rows)

    async def list_all(self) -> list[Subscription]:
        async with self._lock:
            return sorted(self._rows.values(), key=lambda s: (s.symbol, s.data_type, s.user_id))

    async def delete_keys(self, keys: Iterable[DemandKey]) -> int:
        deleted = 0
        async with self._lock:
            for key in set(keys):
                if self._rows.pop(key, None) is not None:
                    deleted += 1
        return deleted

    async def delete_stale(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [k for k, row in self._rows.items() if row.last_seen_at < cutoff]
            for key in stale:
                del self._rows[key]
        return len(stale)

    async def list_demand_pairs(self) -> list[tuple[str, str]]:
        async with self._lock:
            return sorted({k.pair for k in self._rows})


class InMemoryJobQueueRepository:
    """Priority job queue held in a dict keyed by job id."""

    def __init__(
        self,
        *,
        backoff: BackoffSchedule | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._jobs: dict[UUID, RefreshJob] = {}
        self._lock = asyncio.Lock()
        self._backoff = backoff or BackoffSchedule()
        self._clock = clock or system_clock

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(self, job: NewJob) -> RefreshJob | None:
        now = self._clock()
        async with self._lock:
            for existing in self._jobs.values():
                if (
                    existing.symbol == job.symbol
                    and existing.data_type == job.data_type
                    and not existing.status.is_terminal
                ):
                    return None
            created = RefreshJob(
                id=uuid.uuid4(),
                symbol=job.symbol,
                data_type=job.data_type,
                status=JobStatus.PENDING,
                priority=job.priority,
                retry_count=0,
                max_retries=job.max_retries,
                created_at=now,
                estimated_data_size_bytes=job.estimated_data_size_bytes,
                job_metadata=dict(job.job_metadata),
                updated_at=now,
                next_attempt_at=now,
            )
            self._jobs[created.id] = created
            return created

    async def claim_batch(
        self,
        batch_size: int,
        max_priority: int,
        *,
        worker_id: str | None = None,
    ) -> list[RefreshJob]:
        if batch_size <= 0:
            return []
        now = self._clock()
        async with self._lock:
            eligible = sorted(
                (
                    j
                    for j in self._jobs.values()
                    if j.status is JobStatus.PENDING
                    and j.priority <= max_priority
                    and (j.next_attempt_at is None or j.next_attempt_at <= now)
                ),
                key=lambda j: (j.priority, j.created_at, str(j.id)),
            )[:batch_size]
            claimed = []
            for job in eligible:
                updated = replace(
                    job,
                    status=JobStatus.PROCESSING,
                    claimed_at=now,
                    claimed_by=worker_id,
                    updated_at=now,
                )
                self._jobs[job.id] = updated
                claimed.append(updated)
            return claimed

    async def complete(
        self,
        job_id: UUID,
        data_size_bytes: int,
        *,
        worker_id: str | None = None,
    ) -> None:
        now = self._clock()
        async with self._lock:
            job = self._require_held(job_id, worker_id)
            self._jobs[job_id] = replace(
                job,
                status=JobStatus.COMPLETED,
                actual_data_size_bytes=max(int(data_size_bytes), 0),
                processed_at=now,
                updated_at=now,
                error_message=None,
                error_code=None,
            )

    async def fail(
        self,
        job_id: UUID,
        error_message: str,
        *,
        error_code: str | None = None,
        terminal: bool = False,
        worker_id: str | None = None,
    ) -> JobStatus:
        now = self._clock()
        async with self._lock:
            job = self._require_held(job_id, worker_id)
            if not terminal and job.retry_count < job.max_retries:
                retry_count = job.retry_count + 1
                updated = replace(
                    job,
                    status=JobStatus.PENDING,
                    retry_count=retry_count,
                    next_attempt_at=now + self._backoff.delay_for(retry_count),
                    claimed_at=None,
                    claimed_by=None,
                    error_message=error_message,
                    error_code=error_code,
                    updated_at=now,
                )
            else:
                updated = replace(
                    job,
                    status=JobStatus.FAILED,
                    processed_at=now,
                    error_message=error_message,
                    error_code=error_code,
                    updated_at=now,
                )
            self._jobs[job_id] = updated
            return updated.status

    async def reset_immediate(self, job_id: UUID, *, worker_id: str | None = None) -> None:
        now = self._clock()
        async with self._lock:
            job = self._require_held(job_id, worker_id)
            self._jobs[job_id] = replace(
                job,
                status=JobStatus.PENDING,
                next_attempt_at=now,
                claimed_at=None,
                claimed_by=None,
                updated_at=now,
            )

    async def reclaim_stuck(self, lease_timeout: timedelta) -> int:
        now = self._clock()
        cutoff = now - lease_timeout
        async with self._lock:
            stuck = [j for j in self._jobs.values() if _is_stuck(j, cutoff)]
            for job in stuck:
                self._jobs[job.id] = replace(
                    job,
                    status=JobStatus.PENDING,
                    next_attempt_at=now,
                    claimed_at=None,
                    claimed_by=None,
                    updated_at=now,
                )
        return len(stuck)

    async def get(self, job_id: UUID) -> RefreshJob | None:
        async with self._lock:
            return self._jobs.get(job_id)

    # ------------------------------------------------------------------
    # Monitoring aggregates
    # ------------------------------------------------------------------

    async def count_resolved(self, since: datetime) -> ResolvedJobCounts:
        async with self._lock:
            resolved = [
                j
                for j in self._jobs.values()
                if j.status.is_terminal and j.processed_at is not None and j.processed_at >= since
            ]
        failed = [j for j in resolved if j.status is JobStatus.FAILED]
        return ResolvedJobCounts(
            completed=sum(1 for j in resolved if j.status is JobStatus.COMPLETED),
            failed=len(failed),
            stale_rejected=sum(1 for j in failed if j.error_code == StaleDataRejectedError.code),
        )

    async def sum_completed_bytes(self, since: datetime) -> int:
        async with self._lock:
            return sum(
                j.actual_data_size_bytes or 0
                for j in self._jobs.values()
                if j.status is JobStatus.COMPLETED
                and j.processed_at is not None
                and j.processed_at >= since
            )

    async def stuck_jobs(self, lease_timeout: timedelta) -> StuckJobsSummary:
        cutoff = self._clock() - lease_timeout
        async with self._lock:
            stuck = [j for j in self._jobs.values() if _is_stuck(j, cutoff)]
        return StuckJobsSummary(
            count=len(stuck),
            data_types=tuple(sorted({j.data_type for j in stuck})),
        )

    async def last_completed_at(self, symbol: str, data_type: str) -> datetime | None:
        async with self._lock:
            times = [
                j.processed_at
                for j in self._jobs.values()
                if j.symbol == symbol
                and j.data_type == data_type
                and j.status is JobStatus.COMPLETED
                and j.processed_at is not None
            ]
        return max(times) if times else None

    async def purge_terminal(self, older_than: datetime) -> int:
        async with self._lock:
            doomed = [
                j.id
                for j in self._jobs.values()
                if j.status.is_terminal
                and j.processed_at is not None
                and j.processed_at < older_than
            ]
            for job_id in doomed:
                del self._jobs[job_id]
        return len(doomed)

    # ------------------------------------------------------------------
    # Development helpers
    # ------------------------------------------------------------------

    async def all_jobs(self) -> list[RefreshJob]:
        """Return every job ordered by creation time."""
        async with self._lock:
            return sorted(self._jobs.values(), key=lambda j: (j.created_at, str(j.id)))

    def _require(self, job_id: UUID) -> RefreshJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found", details={"job_id": str(job_id)})
        return job

    def _require_held(self, job_id: UUID, worker_id: str | None) -> RefreshJob:
        job = self._require(job_id)
        if not _is_held(job, worker_id):
            raise LeaseLostError(
                f"job {job_id} is no longer held",
                details={
                    "job_id": str(job_id),
                    "status": job.status.value,
                    "claimed_by": job.claimed_by,
                    "worker_id": worker_id,
                },
            )
        return job


def _is_held(job: RefreshJob, worker_id: str | None) -> bool:
    if job.status is not JobStatus.PROCESSING:
        return False
    return worker_id is None or job.claimed_by == worker_id


def _is_stuck(job: RefreshJob, cutoff: datetime) -> bool:
    return (
        job.status is JobStatus.PROCESSING
        and job.claimed_at is not None
        and job.claimed_at < cutoff
    )
