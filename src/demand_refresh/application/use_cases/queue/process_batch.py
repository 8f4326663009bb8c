# src/demand_refresh/application/use_cases/queue/process_batch.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Use case: Process one batch of refresh jobs.

Synopsis:
    A stateless invocation: claim up to ``batch_size`` due jobs, dispatch each
    to the handler registered for its ``data_type`` and resolve every job to
    exactly one queue transition. Any number of invocations may run at once;
    the queue guarantees they claim disjoint jobs.

Responsibilities:
    * Fail fast with ``ConfigurationError`` before claiming anything when the
      handler table is empty or the batch settings are unusable.
    * Skip the invocation entirely while the data-transfer quota is exhausted.
    * Resolve each job:
        - handler success -> ``complete``
        - ``TransientContentionError`` or a database deadlock/serialization
          failure -> ``reset_immediate`` (retry budget untouched)
        - ``StaleDataRejectedError`` -> terminal ``fail`` with
          ``STALE_DATA_REJECTED`` (never retried)
        - no handler for the data type -> ``fail`` with ``UNSUPPORTED_DATA_TYPE``
        - any other exception -> ``fail``
    * Never let one job's error abort the batch.
    * Resolve only jobs this worker still holds; a write rejected with
      ``LeaseLostError`` is logged as ``processor.lease_lost`` and the job is
      left to whoever owns it now.
    * Bound total run time; jobs still ``processing`` when the timeout hits
      are left for stuck-job reclamation.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from uuid import UUID

from demand_refresh.domain.entities.job import RefreshJob
from demand_refresh.domain.enums.job import JobOutcome, JobStatus
from demand_refresh.domain.exceptions.base import ConfigurationError, DomainError
from demand_refresh.domain.exceptions.queue import (
    LeaseLostError,
    StaleDataRejectedError,
    TransientContentionError,
    UnsupportedDataTypeError,
)
from demand_refresh.domain.interfaces.handlers.job_handler import JobHandler
from demand_refresh.domain.interfaces.repositories.job_queue_repository import (
    JobQueueRepository,
)
from demand_refresh.domain.services.clock import Clock, system_clock
from demand_refresh.domain.services.quota import QuotaPolicy
from demand_refresh.infrastructure.database.errors import is_contention_error
from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.observability.metrics import (
    get_batch_duration_seconds,
    get_batch_invocations_total,
    get_jobs_resolved_total,
)

logger = get_json_logger(__name__)

_MAX_ERROR_MESSAGE = 2000


@dataclass(frozen=True)
class JobOutcomeRecord:
    """How one claimed job was resolved."""

    job_id: UUID
    symbol: str
    data_type: str
    outcome: JobOutcome
    duration_ms: int
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "symbol": self.symbol,
            "data_type": self.data_type,
            "outcome": self.outcome.value,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "error_code": self.error_code,
        }


@dataclass(frozen=True)
class BatchResult:
    """Structured result of one invocation.

    ``status`` is ``ok``, ``empty`` (nothing to claim), ``quota_exceeded``
    (nothing claimed on purpose) or ``timeout`` (some jobs abandoned).
    """

    status: str
    claimed: int = 0
    outcomes: tuple[JobOutcomeRecord, ...] = field(default_factory=tuple)
    duration_ms: int = 0
    quota_usage: float | None = None

    def _count(self, *kinds: JobOutcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome in kinds)

    @property
    def processed(self) -> int:
        return self._count(
            JobOutcome.COMPLETED, JobOutcome.RETRY, JobOutcome.FAILED, JobOutcome.RESET
        )

    @property
    def succeeded(self) -> int:
        return self._count(JobOutcome.COMPLETED)

    @property
    def failed(self) -> int:
        return self._count(JobOutcome.RETRY, JobOutcome.FAILED)

    @property
    def reset(self) -> int:
        return self._count(JobOutcome.RESET)

    @property
    def abandoned(self) -> int:
        return self.claimed - self.processed

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "claimed": self.claimed,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "reset": self.reset,
            "abandoned": self.abandoned,
            "duration_ms": self.duration_ms,
            "quota_usage": self.quota_usage,
            "jobs": [o.to_dict() for o in self.outcomes],
        }


class ProcessBatchUseCase:
    """Claim and resolve one batch of refresh jobs."""

    def __init__(
        self,
        *,
        jobs: JobQueueRepository,
        handlers: Mapping[str, JobHandler],
        batch_size: int,
        max_priority: int,
        worker_id: str | None = None,
        concurrency: int = 1,
        invocation_timeout: timedelta | None = None,
        quota: QuotaPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._jobs = jobs
        self._handlers = dict(handlers)
        self._batch_size = batch_size
        self._max_priority = max_priority
        self._worker_id = worker_id
        self._concurrency = concurrency
        self._timeout = invocation_timeout
        self._quota = quota
        self._clock = clock or system_clock

    def _validate(self) -> None:
        if not self._handlers:
            raise ConfigurationError("no job handlers registered")
        if self._batch_size < 1:
            raise ConfigurationError(
                "batch_size must be >= 1", details={"batch_size": self._batch_size}
            )
        if self._concurrency < 1:
            raise ConfigurationError(
                "concurrency must be >= 1", details={"concurrency": self._concurrency}
            )
        if self._timeout is not None and self._timeout <= timedelta(0):
            raise ConfigurationError("invocation timeout must be positive")

    async def execute(self) -> BatchResult:
        """Run one invocation.

        Returns:
            BatchResult: Per-job outcomes and totals.

        Raises:
            ConfigurationError: Before any claim, if the processor is misconfigured.
        """
        self._validate()
        started = time.perf_counter()

        quota_usage: float | None = None
        if self._quota is not None:
            used = await self._jobs.sum_completed_bytes(self._clock() - self._quota.window)
            quota_usage = self._quota.usage_ratio(used)
            if self._quota.is_exhausted(used):
                logger.warning(
                    "processor.quota_exceeded",
                    extra={
                        "extra": {
                            "quota_usage": round(quota_usage, 4),
                            "safety_buffer": self._quota.safety_buffer,
                        }
                    },
                )
                get_batch_invocations_total().labels(result="quota_exceeded").inc()
                return BatchResult(
                    status="quota_exceeded",
                    duration_ms=_elapsed_ms(started),
                    quota_usage=quota_usage,
                )

        claimed = await self._jobs.claim_batch(
            self._batch_size, self._max_priority, worker_id=self._worker_id
        )
        if not claimed:
            get_batch_invocations_total().labels(result="empty").inc()
            logger.debug("processor.no_jobs")
            return BatchResult(
                status="empty", duration_ms=_elapsed_ms(started), quota_usage=quota_usage
            )

        logger.info(
            "processor.batch_claimed",
            extra={
                "extra": {
                    "claimed": len(claimed),
                    "worker_id": self._worker_id,
                    "concurrency": self._concurrency,
                }
            },
        )

        records: dict[UUID, JobOutcomeRecord] = {}
        status = "ok"
        try:
            if self._timeout is None:
                await self._run_all(claimed, records)
            else:
                async with asyncio.timeout(self._timeout.total_seconds()):
                    await self._run_all(claimed, records)
        except TimeoutError:
            status = "timeout"
            logger.warning(
                "processor.invocation_timeout",
                extra={
                    "extra": {
                        "claimed": len(claimed),
                        "resolved": len(records),
                        "timeout_s": self._timeout.total_seconds() if self._timeout else None,
                    }
                },
            )

        ordered = tuple(records[j.id] for j in claimed if j.id in records)
        result = BatchResult(
            status=status,
            claimed=len(claimed),
            outcomes=ordered,
            duration_ms=_elapsed_ms(started),
            quota_usage=quota_usage,
        )
        get_batch_duration_seconds().observe(result.duration_ms / 1000.0)
        get_batch_invocations_total().labels(result=status).inc()
        logger.info(
            "processor.batch_done",
            extra={
                "extra": {
                    "status": result.status,
                    "claimed": result.claimed,
                    "succeeded": result.succeeded,
                    "failed": result.failed,
                    "reset": result.reset,
                    "abandoned": result.abandoned,
                    "duration_ms": result.duration_ms,
                }
            },
        )
        return result

    # ------------------------------------------------------------------ #
    # Per-job processing
    # ------------------------------------------------------------------ #
    async def _run_all(
        self, claimed: list[RefreshJob], records: dict[UUID, JobOutcomeRecord]
    ) -> None:
        if self._concurrency == 1:
            for job in claimed:
                records[job.id] = await self._process_one(job)
            return

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(job: RefreshJob) -> None:
            async with semaphore:
                records[job.id] = await self._process_one(job)

        async with asyncio.TaskGroup() as tg:
            for job in claimed:
                tg.create_task(_bounded(job))

    async def _process_one(self, job: RefreshJob) -> JobOutcomeRecord:
        started = time.perf_counter()
        handler = self._handlers.get(job.data_type)
        error: str | None = None
        error_code: str | None = None
        try:
            if handler is None:
                exc: Exception = UnsupportedDataTypeError(
                    f"no handler registered for data type '{job.data_type}'"
                )
                outcome = await self._record_failure(job, exc)
                error, error_code = str(exc), UnsupportedDataTypeError.code
            else:
                try:
                    result = await handler.handle(job.symbol, job.job_metadata)
                except asyncio.CancelledError:
                    raise
                except Exception as handler_exc:  # noqa: BLE001
                    error = _error_message(handler_exc)
                    if isinstance(handler_exc, TransientContentionError) or is_contention_error(
                        handler_exc
                    ):
                        await self._jobs.reset_immediate(job.id, worker_id=self._worker_id)
                        outcome = JobOutcome.RESET
                        error_code = TransientContentionError.code
                    else:
                        outcome = await self._record_failure(
                            job,
                            handler_exc,
                            terminal=isinstance(handler_exc, StaleDataRejectedError),
                        )
                        error_code = _error_code(handler_exc)
                else:
                    size = int(getattr(result, "data_size_bytes", 0) or 0)
                    await self._jobs.complete(job.id, size, worker_id=self._worker_id)
                    outcome = JobOutcome.COMPLETED
        except asyncio.CancelledError:
            raise
        except LeaseLostError as lost:
            # Reclaimed or resolved elsewhere; nothing was written.
            logger.warning(
                "processor.lease_lost",
                extra={"extra": {**lost.details, "data_type": job.data_type}},
            )
            outcome = JobOutcome.ABANDONED
            error, error_code = str(lost), LeaseLostError.code
        except Exception as resolve_exc:  # noqa: BLE001
            # The queue write itself failed; the lease expires and reclamation
            # returns the job to pending.
            logger.exception(
                "processor.resolve_failed",
                extra={"extra": {"job_id": str(job.id), "data_type": job.data_type}},
            )
            outcome = JobOutcome.ABANDONED
            error = _error_message(resolve_exc)
            error_code = _error_code(resolve_exc)

        record = JobOutcomeRecord(
            job_id=job.id,
            symbol=job.symbol,
            data_type=job.data_type,
            outcome=outcome,
            duration_ms=_elapsed_ms(started),
            error=error,
            error_code=error_code,
        )
        get_jobs_resolved_total().labels(outcome=outcome.value, data_type=job.data_type).inc()
        _log_outcome(job, record)
        return record

    async def _record_failure(
        self, job: RefreshJob, exc: Exception, *, terminal: bool = False
    ) -> JobOutcome:
        status = await self._jobs.fail(
            job.id,
            _error_message(exc),
            error_code=_error_code(exc),
            terminal=terminal,
            worker_id=self._worker_id,
        )
        return JobOutcome.FAILED if status is JobStatus.FAILED else JobOutcome.RETRY


def _error_code(exc: BaseException) -> str | None:
    return exc.code if isinstance(exc, DomainError) else None


def _error_message(exc: BaseException) -> str:
    text = str(exc) or type(exc).__name__
    return text[:_MAX_ERROR_MESSAGE]


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _log_outcome(job: RefreshJob, record: JobOutcomeRecord) -> None:
    payload = {
        "job_id": str(job.id),
        "symbol": job.symbol,
        "data_type": job.data_type,
        "outcome": record.outcome.value,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "duration_ms": record.duration_ms,
    }
    if record.outcome is JobOutcome.COMPLETED:
        logger.info("processor.job_completed", extra={"extra": payload})
        return
    payload.update({"error": record.error, "error_code": record.error_code})
    if record.outcome is JobOutcome.RESET:
        logger.warning("processor.job_reset", extra={"extra": payload})
    else:
        logger.warning("processor.job_failed", extra={"extra": payload})
