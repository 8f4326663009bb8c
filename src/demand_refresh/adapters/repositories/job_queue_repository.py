# src/demand_refresh/adapters/repositories/job_queue_repository.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Refresh Job Queue Repository (SQLAlchemy).

Purpose:
    PostgreSQL implementation of ``JobQueueRepository``.

Layer:
    adapters

Notes:
    * ``claim_batch`` is a single ``UPDATE ... WHERE id IN (SELECT ... FOR
      UPDATE SKIP LOCKED) RETURNING`` statement. Rows locked by another
      claimer are skipped rather than waited on, so concurrent processors get
      disjoint batches without blocking each other.
    * ``enqueue`` relies on the partial unique index over in-flight rows and
      ``ON CONFLICT DO NOTHING``.
    * ``fail`` reads the row ``FOR UPDATE`` and decides retry vs. terminal
      failure in the same transaction.
    * ``complete``, ``fail`` and ``reset_immediate`` only touch a row that is
      still ``processing`` (and claimed by ``worker_id`` when one is given).
      A write that matches nothing raises ``LeaseLostError`` instead of
      overwriting a reclaimed or already resolved job.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import ColumnElement, Update, delete, func, select, update
from sqlalchemy.dialects.postgresql import Insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from demand_refresh.adapters.repositories.base_repository import BaseRepository
from demand_refresh.domain.entities.job import RefreshJob
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
from demand_refresh.domain.services.clock import Clock
from demand_refresh.infrastructure.database.models.refresh_queue import (
    IN_FLIGHT_STATUSES,
    RefreshJobModel,
)

_TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


def build_claim_statement(
    batch_size: int,
    max_priority: int,
    *,
    now: datetime,
    worker_id: str | None,
) -> Update:
    """Return the atomic claim statement.

    Args:
        batch_size: Maximum number of jobs to claim.
        max_priority: Only jobs with ``priority <= max_priority`` are eligible.
        now: Claim time; also the ``next_attempt_at`` horizon.
        worker_id: Identifier recorded in ``claimed_by``.

    Returns:
        Update: ``UPDATE ... RETURNING`` over a ``SKIP LOCKED`` subselect.
    """
    eligible = (
        select(RefreshJobModel.id)
        .where(
            RefreshJobModel.status == JobStatus.PENDING.value,
            RefreshJobModel.priority <= max_priority,
            RefreshJobModel.next_attempt_at <= now,
        )
        .order_by(
            RefreshJobModel.priority.asc(),
            RefreshJobModel.created_at.asc(),
            RefreshJobModel.id.asc(),
        )
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    return (
        update(RefreshJobModel)
        .where(RefreshJobModel.id.in_(eligible.scalar_subquery()))
        .values(
            status=JobStatus.PROCESSING.value,
            claimed_at=now,
            claimed_by=worker_id,
            updated_at=now,
        )
        .returning(RefreshJobModel)
        .execution_options(synchronize_session=False)
    )


def build_enqueue_statement(job: NewJob, *, now: datetime) -> Insert:
    """Return the idempotent ``INSERT ... ON CONFLICT DO NOTHING`` for ``job``."""
    stmt = pg_insert(RefreshJobModel).values(
        id=uuid.uuid4(),
        symbol=job.symbol,
        data_type=job.data_type,
        status=JobStatus.PENDING.value,
        priority=job.priority,
        retry_count=0,
        max_retries=job.max_retries,
        estimated_data_size_bytes=job.estimated_data_size_bytes,
        job_metadata=dict(job.job_metadata),
        created_at=now,
        updated_at=now,
        next_attempt_at=now,
    )
    return stmt.on_conflict_do_nothing(
        index_elements=[RefreshJobModel.symbol, RefreshJobModel.data_type],
        index_where=RefreshJobModel.status.in_(IN_FLIGHT_STATUSES),
    )


def build_lease_filter(job_id: UUID, worker_id: str | None) -> list[ColumnElement[bool]]:
    """Return the WHERE clauses matching ``job_id`` only while it is held."""
    clauses = [
        RefreshJobModel.id == job_id,
        RefreshJobModel.status == JobStatus.PROCESSING.value,
    ]
    if worker_id is not None:
        clauses.append(RefreshJobModel.claimed_by == worker_id)
    return clauses


class SqlJobQueueRepository(BaseRepository[RefreshJobModel]):
    """SQLAlchemy-backed refresh job queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        backoff: BackoffSchedule | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(session_factory, clock=clock)
        self._backoff = backoff or BackoffSchedule()

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(self, job: NewJob) -> RefreshJob | None:
        stmt = build_enqueue_statement(job, now=self.utc_now()).returning(RefreshJobModel)
        async with self.transaction() as session:
            model = (await session.execute(stmt)).scalar_one_or_none()
            return model.to_entity() if model is not None else None

    async def claim_batch(
        self,
        batch_size: int,
        max_priority: int,
        *,
        worker_id: str | None = None,
    ) -> list[RefreshJob]:
        if batch_size <= 0:
            return []
        stmt = build_claim_statement(
            batch_size, max_priority, now=self.utc_now(), worker_id=worker_id
        )
        async with self.transaction() as session:
            models = list((await session.execute(stmt)).scalars().all())
            jobs = [m.to_entity() for m in models]
        # RETURNING does not preserve the subselect order.
        jobs.sort(key=lambda j: (j.priority, j.created_at, str(j.id)))
        return jobs

    async def complete(
        self,
        job_id: UUID,
        data_size_bytes: int,
        *,
        worker_id: str | None = None,
    ) -> None:
        now = self.utc_now()
        stmt = (
            update(RefreshJobModel)
            .where(*build_lease_filter(job_id, worker_id))
            .values(
                status=JobStatus.COMPLETED.value,
                actual_data_size_bytes=max(int(data_size_bytes), 0),
                processed_at=now,
                updated_at=now,
                error_message=None,
                error_code=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self._execute_for_held_job(stmt, job_id, worker_id)

    async def fail(
        self,
        job_id: UUID,
        error_message: str,
        *,
        error_code: str | None = None,
        terminal: bool = False,
        worker_id: str | None = None,
    ) -> JobStatus:
        now = self.utc_now()
        async with self.transaction() as session:
            model = (
                await session.execute(
                    select(RefreshJobModel)
                    .where(RefreshJobModel.id == job_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if model is None:
                raise JobNotFoundError(f"job {job_id} not found", details={"job_id": str(job_id)})
            if model.status != JobStatus.PROCESSING.value or (
                worker_id is not None and model.claimed_by != worker_id
            ):
                raise _lease_lost(job_id, model, worker_id)

            model.error_message = error_message
            model.error_code = error_code
            model.updated_at = now
            if not terminal and model.retry_count < model.max_retries:
                model.retry_count += 1
                model.status = JobStatus.PENDING.value
                model.next_attempt_at = now + self._backoff.delay_for(model.retry_count)
                model.claimed_at = None
                model.claimed_by = None
            else:
                model.status = JobStatus.FAILED.value
                model.processed_at = now
            return JobStatus(model.status)

    async def reset_immediate(self, job_id: UUID, *, worker_id: str | None = None) -> None:
        now = self.utc_now()
        stmt = (
            update(RefreshJobModel)
            .where(*build_lease_filter(job_id, worker_id))
            .values(
                status=JobStatus.PENDING.value,
                next_attempt_at=now,
                claimed_at=None,
                claimed_by=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self._execute_for_held_job(stmt, job_id, worker_id)

    async def reclaim_stuck(self, lease_timeout: timedelta) -> int:
        now = self.utc_now()
        stmt = (
            update(RefreshJobModel)
            .where(
                RefreshJobModel.status == JobStatus.PROCESSING.value,
                RefreshJobModel.claimed_at < now - lease_timeout,
            )
            .values(
                status=JobStatus.PENDING.value,
                next_attempt_at=now,
                claimed_at=None,
                claimed_by=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.transaction() as session:
            result = await session.execute(stmt)
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def get(self, job_id: UUID) -> RefreshJob | None:
        async with self.transaction() as session:
            model = await session.get(RefreshJobModel, job_id)
            return model.to_entity() if model is not None else None

    # ------------------------------------------------------------------
    # Monitoring aggregates
    # ------------------------------------------------------------------

    async def count_resolved(self, since: datetime) -> ResolvedJobCounts:
        stale = RefreshJobModel.error_code == StaleDataRejectedError.code
        stmt = (
            select(
                RefreshJobModel.status,
                func.count().label("total"),
                func.count().filter(stale).label("stale"),
            )
            .where(
                RefreshJobModel.status.in_(_TERMINAL_STATUSES),
                RefreshJobModel.processed_at >= since,
            )
            .group_by(RefreshJobModel.status)
        )
        async with self.transaction() as session:
            rows = (await session.execute(stmt)).all()
        by_status: dict[str, Any] = {r.status: r for r in rows}
        completed = by_status.get(JobStatus.COMPLETED.value)
        failed = by_status.get(JobStatus.FAILED.value)
        return ResolvedJobCounts(
            completed=int(completed.total) if completed else 0,
            failed=int(failed.total) if failed else 0,
            stale_rejected=int(failed.stale) if failed else 0,
        )

    async def sum_completed_bytes(self, since: datetime) -> int:
        stmt = select(
            func.coalesce(func.sum(RefreshJobModel.actual_data_size_bytes), 0)
        ).where(
            RefreshJobModel.status == JobStatus.COMPLETED.value,
            RefreshJobModel.processed_at >= since,
        )
        async with self.transaction() as session:
            value = (await session.execute(stmt)).scalar_one()
        return int(value or 0)

    async def stuck_jobs(self, lease_timeout: timedelta) -> StuckJobsSummary:
        cutoff = self.utc_now() - lease_timeout
        stmt = (
            select(RefreshJobModel.data_type, func.count().label("n"))
            .where(
                RefreshJobModel.status == JobStatus.PROCESSING.value,
                RefreshJobModel.claimed_at < cutoff,
            )
            .group_by(RefreshJobModel.data_type)
            .order_by(RefreshJobModel.data_type)
        )
        async with self.transaction() as session:
            rows = (await session.execute(stmt)).all()
        return StuckJobsSummary(
            count=sum(int(r.n) for r in rows),
            data_types=tuple(r.data_type for r in rows),
        )

    async def last_completed_at(self, symbol: str, data_type: str) -> datetime | None:
        stmt = select(func.max(RefreshJobModel.processed_at)).where(
            RefreshJobModel.symbol == symbol,
            RefreshJobModel.data_type == data_type,
            RefreshJobModel.status == JobStatus.COMPLETED.value,
        )
        async with self.transaction() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def purge_terminal(self, older_than: datetime) -> int:
        stmt = delete(RefreshJobModel).where(
            RefreshJobModel.status.in_(_TERMINAL_STATUSES),
            RefreshJobModel.processed_at < older_than,
        )
        async with self.transaction() as session:
            result = await session.execute(stmt)
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute_for_held_job(
        self, stmt: Update, job_id: UUID, worker_id: str | None
    ) -> None:
        async with self.transaction() as session:
            result = await session.execute(stmt)
            if result.rowcount:  # type: ignore[attr-defined]
                return
            model = await session.get(RefreshJobModel, job_id)
        if model is None:
            raise JobNotFoundError(f"job {job_id} not found", details={"job_id": str(job_id)})
        raise _lease_lost(job_id, model, worker_id)


def _lease_lost(job_id: UUID, model: RefreshJobModel, worker_id: str | None) -> LeaseLostError:
    return LeaseLostError(
        f"job {job_id} is no longer held",
        details={
            "job_id": str(job_id),
            "status": model.status,
            "claimed_by": model.claimed_by,
            "worker_id": worker_id,
        },
    )
