# tests/unit/application/test_process_batch.py
from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

import pytest

from demand_refresh.adapters.repositories.in_memory import InMemoryJobQueueRepository
from demand_refresh.application.use_cases.queue.process_batch import ProcessBatchUseCase
from demand_refresh.application.use_cases.queue.reclaim_stuck_jobs import (
    ReclaimStuckJobsUseCase,
)
from demand_refresh.domain.enums.job import JobOutcome, JobStatus
from demand_refresh.domain.exceptions.base import ConfigurationError
from demand_refresh.domain.exceptions.queue import (
    StaleDataRejectedError,
    TransientContentionError,
)
from demand_refresh.domain.interfaces.handlers.job_handler import HandlerResult
from demand_refresh.domain.interfaces.repositories.job_queue_repository import NewJob
from demand_refresh.domain.services.backoff import NO_BACKOFF
from demand_refresh.domain.services.quota import QuotaPolicy


class _Handler:
    """Handler that plays back a script of results/exceptions per call."""

    def __init__(self, *script: HandlerResult | BaseException, delay: float = 0.0) -> None:
        self._script = list(script) or [HandlerResult(data_size_bytes=100)]
        self._delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0

    async def handle(self, symbol: str, job_metadata: Mapping[str, Any]) -> HandlerResult:
        self.calls.append(symbol)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            item = self._script.pop(0) if len(self._script) > 1 else self._script[0]
            if isinstance(item, BaseException):
                raise item
            return item
        finally:
            self.active -= 1


class _DeadlockError(Exception):
    sqlstate = "40P01"


@pytest.fixture
def jobs(clock) -> InMemoryJobQueueRepository:
    return InMemoryJobQueueRepository(backoff=NO_BACKOFF, clock=clock)


async def _enqueue(
    jobs: InMemoryJobQueueRepository, *symbols: str, data_type: str = "quote", max_retries: int = 3
) -> None:
    for symbol in symbols:
        await jobs.enqueue(
            NewJob(symbol=symbol, data_type=data_type, priority=10, max_retries=max_retries)
        )


def _processor(jobs: InMemoryJobQueueRepository, handlers: Mapping[str, Any], **kw: Any):
    kw.setdefault("batch_size", 10)
    kw.setdefault("max_priority", 1000)
    return ProcessBatchUseCase(jobs=jobs, handlers=handlers, worker_id="w-test", **kw)


@pytest.mark.anyio
async def test_successful_jobs_complete_with_reported_size(jobs, clock) -> None:
    await _enqueue(jobs, "AAPL", "MSFT")
    handler = _Handler(HandlerResult(data_size_bytes=2_048))

    result = await _processor(jobs, {"quote": handler}).execute()

    assert result.status == "ok"
    assert (result.claimed, result.succeeded, result.failed) == (2, 2, 0)
    assert sorted(handler.calls) == ["AAPL", "MSFT"]
    assert await jobs.sum_completed_bytes(clock() - timedelta(minutes=1)) == 4_096
    assert {j.status for j in await jobs.all_jobs()} == {JobStatus.COMPLETED}


@pytest.mark.anyio
async def test_empty_queue_reports_empty(jobs) -> None:
    result = await _processor(jobs, {"quote": _Handler()}).execute()
    assert result.status == "empty"
    assert result.to_dict()["jobs"] == []


@pytest.mark.anyio
async def test_handler_failures_exhaust_retry_budget_then_fail_terminally(jobs) -> None:
    await _enqueue(jobs, "AAPL", max_retries=3)
    processor = _processor(jobs, {"quote": _Handler(RuntimeError("provider 500"))})

    outcomes = [(await processor.execute()).outcomes[0].outcome for _ in range(4)]

    assert outcomes == [JobOutcome.RETRY] * 3 + [JobOutcome.FAILED]
    (job,) = await jobs.all_jobs()
    assert job.status is JobStatus.FAILED
    assert job.retry_count == 3
    assert job.error_message == "provider 500"
    assert (await processor.execute()).status == "empty"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "exc", [TransientContentionError("row locked"), _DeadlockError("deadlock detected")]
)
async def test_contention_resets_without_consuming_retries(jobs, exc: Exception) -> None:
    await _enqueue(jobs, "AAPL", max_retries=1)
    processor = _processor(jobs, {"quote": _Handler(exc)})

    for _ in range(5):
        result = await processor.execute()
        assert result.reset == 1
        assert result.failed == 0

    (job,) = await jobs.all_jobs()
    assert job.status is JobStatus.PENDING
    assert job.retry_count == 0
    assert result.outcomes[0].error_code == TransientContentionError.code


@pytest.mark.anyio
async def test_stale_data_rejection_fails_terminally_on_first_occurrence(jobs, clock) -> None:
    await _enqueue(jobs, "AAPL", max_retries=3)
    handler = _Handler(StaleDataRejectedError("stored data is newer"))
    processor = _processor(jobs, {"quote": handler})

    results = [await processor.execute() for _ in range(5)]

    assert handler.calls == ["AAPL"]
    assert results[0].outcomes[0].outcome is JobOutcome.FAILED
    assert results[0].outcomes[0].error_code == "STALE_DATA_REJECTED"
    assert [r.status for r in results[1:]] == ["empty"] * 4
    (job,) = await jobs.all_jobs()
    assert job.status is JobStatus.FAILED
    assert job.retry_count == 0
    assert job.error_code == "STALE_DATA_REJECTED"
    counts = await jobs.count_resolved(clock() - timedelta(hours=1))
    assert counts.stale_rejected == 1


class _OvertakenHandler:
    """Handler that stalls long enough for its lease to be reclaimed and re-run."""

    def __init__(self, jobs: InMemoryJobQueueRepository, clock, outcome: BaseException | None):
        self._jobs = jobs
        self._clock = clock
        self._outcome = outcome

    async def handle(self, symbol: str, job_metadata: Mapping[str, Any]) -> HandlerResult:
        self._clock.advance(minutes=10)
        await self._jobs.reclaim_stuck(timedelta(minutes=5))
        (job,) = await self._jobs.claim_batch(1, 1000, worker_id="w-other")
        await self._jobs.complete(job.id, 100, worker_id="w-other")
        if self._outcome is not None:
            raise self._outcome
        return HandlerResult(data_size_bytes=999)


@pytest.mark.anyio
@pytest.mark.parametrize(
    "late", [None, RuntimeError("late error"), TransientContentionError("row locked")]
)
async def test_late_resolution_after_reclaim_leaves_the_new_owner_result(
    jobs, clock, late: BaseException | None
) -> None:
    await _enqueue(jobs, "AAPL", max_retries=0)

    result = await _processor(jobs, {"quote": _OvertakenHandler(jobs, clock, late)}).execute()

    (outcome,) = result.outcomes
    assert outcome.outcome is JobOutcome.ABANDONED
    assert outcome.error_code == "LEASE_LOST"
    assert result.abandoned == 1
    (job,) = await jobs.all_jobs()
    assert job.status is JobStatus.COMPLETED
    assert job.actual_data_size_bytes == 100
    assert job.claimed_by == "w-other"
    counts = await jobs.count_resolved(clock() - timedelta(hours=1))
    assert (counts.completed, counts.failed) == (1, 0)


@pytest.mark.anyio
async def test_unknown_data_type_fails_without_aborting_batch(jobs) -> None:
    await _enqueue(jobs, "AAPL", data_type="quote")
    await _enqueue(jobs, "AAPL", data_type="insider-trades", max_retries=0)

    result = await _processor(jobs, {"quote": _Handler()}).execute()

    by_type = {o.data_type: o for o in result.outcomes}
    assert by_type["quote"].outcome is JobOutcome.COMPLETED
    assert by_type["insider-trades"].outcome is JobOutcome.FAILED
    assert by_type["insider-trades"].error_code == "UNSUPPORTED_DATA_TYPE"


@pytest.mark.anyio
async def test_one_failing_job_does_not_stop_the_rest(jobs) -> None:
    await _enqueue(jobs, "A", "B", "C")
    handler = _Handler(HandlerResult(1), RuntimeError("boom"), HandlerResult(1))

    result = await _processor(jobs, {"quote": handler}).execute()

    assert result.succeeded == 2
    assert result.failed == 1
    assert result.processed == 3


@pytest.mark.anyio
async def test_empty_handler_table_fails_before_claiming(jobs) -> None:
    await _enqueue(jobs, "AAPL")

    with pytest.raises(ConfigurationError):
        await _processor(jobs, {}).execute()

    (job,) = await jobs.all_jobs()
    assert job.status is JobStatus.PENDING


@pytest.mark.anyio
@pytest.mark.parametrize(
    "kwargs", [{"batch_size": 0}, {"concurrency": 0}, {"invocation_timeout": timedelta(0)}]
)
async def test_invalid_batch_settings_are_configuration_errors(jobs, kwargs) -> None:
    with pytest.raises(ConfigurationError):
        await _processor(jobs, {"quote": _Handler()}, **kwargs).execute()


@pytest.mark.anyio
async def test_exhausted_quota_skips_the_invocation(jobs) -> None:
    await _enqueue(jobs, "USED")
    await _processor(jobs, {"quote": _Handler(HandlerResult(9_500))}).execute()
    await _enqueue(jobs, "AAPL")
    handler = _Handler()

    result = await _processor(
        jobs, {"quote": handler}, quota=QuotaPolicy(quota_bytes=10_000, safety_buffer=0.05)
    ).execute()

    assert result.status == "quota_exceeded"
    assert result.claimed == 0
    assert result.quota_usage == pytest.approx(0.95)
    assert handler.calls == []


@pytest.mark.anyio
async def test_quota_below_buffer_still_processes(jobs) -> None:
    await _enqueue(jobs, "AAPL")
    result = await _processor(
        jobs, {"quote": _Handler()}, quota=QuotaPolicy(quota_bytes=10_000)
    ).execute()
    assert result.status == "ok"
    assert result.quota_usage == 0.0


@pytest.mark.anyio
async def test_invocation_timeout_abandons_unfinished_jobs_for_reclaim(jobs, clock) -> None:
    await _enqueue(jobs, "SLOW")
    processor = _processor(
        jobs,
        {"quote": _Handler(delay=5.0)},
        invocation_timeout=timedelta(milliseconds=50),
    )

    result = await processor.execute()

    assert result.status == "timeout"
    assert result.claimed == 1
    assert result.abandoned == 1
    (job,) = await jobs.all_jobs()
    assert job.status is JobStatus.PROCESSING

    clock.advance(minutes=6)
    reclaimer = ReclaimStuckJobsUseCase(jobs=jobs, lease_timeout=timedelta(minutes=5))
    assert await reclaimer.execute() == 1
    (job,) = await jobs.all_jobs()
    assert job.status is JobStatus.PENDING
    assert job.retry_count == 0


@pytest.mark.anyio
async def test_concurrency_bounds_parallel_handler_calls(jobs) -> None:
    await _enqueue(jobs, *[f"S{i}" for i in range(6)])
    handler = _Handler(delay=0.01)

    result = await _processor(jobs, {"quote": handler}, concurrency=3).execute()

    assert result.succeeded == 6
    assert 1 < handler.peak <= 3


@pytest.mark.anyio
async def test_concurrent_invocations_never_process_a_job_twice(jobs) -> None:
    await _enqueue(jobs, *[f"S{i}" for i in range(9)])
    handler = _Handler(delay=0.001)
    processors = [_processor(jobs, {"quote": handler}, batch_size=4) for _ in range(3)]

    results = await asyncio.gather(*(p.execute() for p in processors))

    assert sum(r.claimed for r in results) == 9
    assert sorted(handler.calls) == sorted(f"S{i}" for i in range(9))


@pytest.mark.anyio
async def test_result_serializes_per_job_outcomes(jobs) -> None:
    await _enqueue(jobs, "AAPL")
    payload = (await _processor(jobs, {"quote": _Handler()}).execute()).to_dict()

    assert payload["status"] == "ok"
    assert payload["succeeded"] == 1
    (entry,) = payload["jobs"]
    assert entry["symbol"] == "AAPL"
    assert entry["outcome"] == "completed"
