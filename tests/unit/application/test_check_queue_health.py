# tests/unit/application/test_check_queue_health.py
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from demand_refresh.adapters.repositories.in_memory import InMemoryJobQueueRepository
from demand_refresh.application.use_cases.monitoring.check_queue_health import (
    CheckQueueHealthUseCase,
    MonitorThresholds,
)
from demand_refresh.domain.enums.alert import AlertStatus, AlertType
from demand_refresh.domain.exceptions.monitoring import MonitoringQueryError
from demand_refresh.domain.exceptions.queue import StaleDataRejectedError
from demand_refresh.domain.interfaces.repositories.job_queue_repository import NewJob
from demand_refresh.domain.services.backoff import NO_BACKOFF
from demand_refresh.domain.services.quota import QuotaPolicy


@pytest.fixture
def jobs(clock) -> InMemoryJobQueueRepository:
    return InMemoryJobQueueRepository(backoff=NO_BACKOFF, clock=clock)


def _monitor(jobs, clock, *, quota_bytes: int = 10_000, **thresholds) -> CheckQueueHealthUseCase:
    return CheckQueueHealthUseCase(
        jobs=jobs,
        quota=QuotaPolicy(quota_bytes=quota_bytes),
        thresholds=MonitorThresholds(**thresholds),
        clock=clock,
    )


async def _resolve(
    jobs: InMemoryJobQueueRepository,
    *,
    completed: int = 0,
    failed: int = 0,
    stale: int = 0,
    size: int = 1,
) -> None:
    plan = ["ok"] * completed + ["fail"] * failed + ["stale"] * stale
    for i in range(len(plan)):
        job = await jobs.enqueue(
            NewJob(symbol=f"S{i}", data_type="quote", priority=1, max_retries=0)
        )
        assert job is not None
    claimed = await jobs.claim_batch(len(plan), 1000)
    by_symbol = {j.symbol: j for j in claimed}
    for i, kind in enumerate(plan):
        job = by_symbol[f"S{i}"]
        if kind == "ok":
            await jobs.complete(job.id, size)
        elif kind == "stale":
            await jobs.fail(
                job.id, "older", error_code=StaleDataRejectedError.code, terminal=True
            )
        else:
            await jobs.fail(job.id, "boom", error_code="HANDLER_ERROR")


# --------------------------------------------------------------------------- #
# Success rate
# --------------------------------------------------------------------------- #


@pytest.mark.anyio
async def test_no_resolved_jobs_is_a_perfect_success_rate(jobs, clock) -> None:
    result = await _monitor(jobs, clock).check_success_rate()

    assert result.status is AlertStatus.HEALTHY
    assert result.metric_value == 100.0
    assert result.threshold == pytest.approx(90.0)


@pytest.mark.anyio
async def test_stale_rejections_are_not_failures(jobs, clock) -> None:
    await _resolve(jobs, completed=9, failed=1, stale=5)

    result = await _monitor(jobs, clock).check_success_rate()

    assert result.status is AlertStatus.HEALTHY
    assert result.metric_value == pytest.approx(90.0)
    assert result.message == (
        "Queue success rate is 90.00% (1 actual failures, 5 stale data rejections excluded)"
    )


@pytest.mark.anyio
async def test_low_success_rate_alerts(jobs, clock) -> None:
    await _resolve(jobs, completed=8, failed=2, stale=1)

    result = await _monitor(jobs, clock).check_success_rate()

    assert result.is_alert
    assert result.alert_type is AlertType.QUEUE_SUCCESS_RATE
    assert result.metric_value == pytest.approx(80.0)
    assert result.message.startswith("Queue success rate is 80.00% (below 90% threshold).")
    assert "2 actual failures, 1 stale data rejections (expected)" in result.message


@pytest.mark.anyio
async def test_success_rate_window_excludes_older_jobs(jobs, clock) -> None:
    await _resolve(jobs, failed=3)
    clock.advance(minutes=61)

    result = await _monitor(jobs, clock).check_success_rate()

    assert result.metric_value == 100.0


# --------------------------------------------------------------------------- #
# Quota usage
# --------------------------------------------------------------------------- #


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("used", "status"),
    [(8_000, AlertStatus.HEALTHY), (8_001, AlertStatus.ALERT)],
)
async def test_quota_boundary_is_strictly_above_threshold(jobs, clock, used, status) -> None:
    await _resolve(jobs, completed=1, size=used)

    result = await _monitor(jobs, clock).check_quota_usage()

    assert result.status is status
    assert result.metric_value == pytest.approx(used / 100)


@pytest.mark.anyio
async def test_quota_messages(jobs, clock) -> None:
    await _resolve(jobs, completed=1, size=9_000)
    alert = await _monitor(jobs, clock).check_quota_usage()
    assert alert.message == "Quota usage is 90.00% (above 80% threshold)"

    healthy = await _monitor(jobs, clock, quota_bytes=100_000).check_quota_usage()
    assert healthy.message == "Quota usage is 9.00%"


# --------------------------------------------------------------------------- #
# Stuck jobs
# --------------------------------------------------------------------------- #


async def _stick(jobs: InMemoryJobQueueRepository, count: int, data_type: str) -> None:
    for i in range(count):
        await jobs.enqueue(
            NewJob(symbol=f"{data_type}-{i}", data_type=data_type, priority=1, max_retries=3)
        )
    await jobs.claim_batch(count, 1000)


@pytest.mark.anyio
async def test_stuck_jobs_alert_above_threshold(jobs, clock) -> None:
    await _stick(jobs, 6, "quote")
    await _stick(jobs, 5, "profile")
    clock.advance(minutes=6)

    result = await _monitor(jobs, clock).check_stuck_jobs()

    assert result.is_alert
    assert result.metric_value == 11.0
    assert result.threshold == 10.0
    assert result.message == "11 stuck jobs detected (above 10 threshold) affecting 2 data types"


@pytest.mark.anyio
async def test_stuck_jobs_at_threshold_are_healthy(jobs, clock) -> None:
    await _stick(jobs, 10, "quote")
    clock.advance(minutes=6)

    result = await _monitor(jobs, clock).check_stuck_jobs()

    assert result.status is AlertStatus.HEALTHY
    assert result.message == "10 stuck jobs (within threshold)"


@pytest.mark.anyio
async def test_recent_claims_are_not_stuck(jobs, clock) -> None:
    await _stick(jobs, 20, "quote")
    clock.advance(minutes=4)

    result = await _monitor(jobs, clock).check_stuck_jobs()

    assert result.metric_value == 0.0


# --------------------------------------------------------------------------- #
# Rollup and failures
# --------------------------------------------------------------------------- #


@pytest.mark.anyio
async def test_check_all_rolls_up_any_alert(jobs, clock) -> None:
    await _resolve(jobs, completed=1, size=9_000)

    combined = await _monitor(jobs, clock).check_all()

    assert combined.is_alert
    assert combined.timestamp == clock()
    payload = combined.to_dict()
    assert payload["status"] == "alert"
    assert payload["alerts"]["quota_usage"]["status"] == "alert"
    assert payload["alerts"]["queue_success_rate"]["status"] == "healthy"
    datetime.fromisoformat(payload["timestamp"])


@pytest.mark.anyio
async def test_store_failure_raises_query_error_instead_of_alerting(clock) -> None:
    class _BrokenJobs(InMemoryJobQueueRepository):
        async def count_resolved(self, since):  # type: ignore[override]
            raise ConnectionError("db down")

    monitor = _monitor(_BrokenJobs(clock=clock), clock)

    with pytest.raises(MonitoringQueryError, match="Failed to check queue success rate") as info:
        await monitor.check_success_rate()
    assert info.value.details == {"check": "queue_success_rate"}

    with pytest.raises(MonitoringQueryError):
        await monitor.check_all()


def test_default_thresholds() -> None:
    thresholds = MonitorThresholds()
    assert thresholds.success_rate == 0.90
    assert thresholds.stuck_jobs == 10
    assert thresholds.success_window == timedelta(minutes=60)
