# tests/integration/test_pg_claims.py
"""Queue and registry statements against a live PostgreSQL.

Set ``REFRESH_PG_TEST_URL`` (``postgresql+asyncpg://...``) to run. The tables
are created from the ORM metadata and truncated around every test.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from demand_refresh.adapters.repositories.job_queue_repository import SqlJobQueueRepository
from demand_refresh.adapters.repositories.subscription_repository import (
    SqlSubscriptionRepository,
)
from demand_refresh.domain.entities.presence import DemandKey
from demand_refresh.domain.enums.job import JobStatus
from demand_refresh.domain.exceptions.queue import LeaseLostError, StaleDataRejectedError
from demand_refresh.domain.interfaces.repositories.job_queue_repository import NewJob
from demand_refresh.domain.services.backoff import NO_BACKOFF
from demand_refresh.infrastructure.database.models import refresh_queue  # noqa: F401
from demand_refresh.infrastructure.database.models.base import metadata

PG_URL = os.getenv("REFRESH_PG_TEST_URL")


def _now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not PG_URL, reason="REFRESH_PG_TEST_URL not set"),
]


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    assert PG_URL is not None
    engine = create_async_engine(PG_URL, pool_size=8)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        for table in reversed(metadata.sorted_tables):
            await conn.execute(text(f"TRUNCATE {table.fullname}"))
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.anyio
async def test_concurrent_claims_are_disjoint(session_factory) -> None:
    repo = SqlJobQueueRepository(session_factory, backoff=NO_BACKOFF)
    for i in range(20):
        await repo.enqueue(
            NewJob(symbol=f"S{i:02d}", data_type="quote", priority=i % 3, max_retries=3)
        )

    batches = await asyncio.gather(
        *(
            SqlJobQueueRepository(session_factory).claim_batch(5, 1000, worker_id=f"w{n}")
            for n in range(4)
        )
    )

    claimed = [job.id for batch in batches for job in batch]
    assert len(claimed) == 20
    assert len(set(claimed)) == 20
    assert all(job.status is JobStatus.PROCESSING for batch in batches for job in batch)


@pytest.mark.anyio
async def test_enqueue_is_idempotent_per_symbol_and_type(session_factory) -> None:
    repo = SqlJobQueueRepository(session_factory)
    job = NewJob(symbol="AAPL", data_type="quote", priority=10, max_retries=3)

    first = await repo.enqueue(job)
    second = await repo.enqueue(job)

    assert first is not None
    assert second is None


@pytest.mark.anyio
async def test_failure_cycle_and_reclaim(session_factory) -> None:
    repo = SqlJobQueueRepository(session_factory, backoff=NO_BACKOFF)
    await repo.enqueue(NewJob(symbol="AAPL", data_type="quote", priority=10, max_retries=1))

    (job,) = await repo.claim_batch(1, 1000)
    assert await repo.fail(job.id, "boom", error_code="HANDLER_ERROR") is JobStatus.PENDING
    stored = await repo.get(job.id)
    assert stored is not None
    assert stored.retry_count == 1

    (job,) = await repo.claim_batch(1, 1000)
    assert await repo.fail(job.id, "boom", error_code="HANDLER_ERROR") is JobStatus.FAILED

    await repo.enqueue(NewJob(symbol="MSFT", data_type="quote", priority=10, max_retries=1))
    await repo.claim_batch(1, 1000)
    await asyncio.sleep(0.05)
    assert await repo.reclaim_stuck(timedelta(0)) == 1


@pytest.mark.anyio
async def test_subscription_upsert_keeps_latest_last_seen(session_factory) -> None:
    repo = SqlSubscriptionRepository(session_factory)
    key = DemandKey("u1", "AAPL", "quote")
    rows = await repo.list_all()
    assert rows == []

    await repo.upsert_many([key], seen_at=_now())
    later = _now() + timedelta(minutes=5)
    await repo.upsert_many([key], seen_at=later)
    await repo.upsert_many([key], seen_at=later - timedelta(minutes=10))

    (row,) = await repo.list_all()
    assert row.last_seen_at == later


@pytest.mark.anyio
async def test_late_fail_from_reclaimed_worker_keeps_completion(session_factory) -> None:
    repo = SqlJobQueueRepository(session_factory, backoff=NO_BACKOFF)
    await repo.enqueue(NewJob(symbol="AAPL", data_type="quote", priority=10, max_retries=0))
    (job,) = await repo.claim_batch(1, 1000, worker_id="A")
    await asyncio.sleep(0.05)
    assert await repo.reclaim_stuck(timedelta(0)) == 1
    await repo.claim_batch(1, 1000, worker_id="B")

    with pytest.raises(LeaseLostError):
        await repo.complete(job.id, 1, worker_id="A")
    await repo.complete(job.id, 100, worker_id="B")
    with pytest.raises(LeaseLostError):
        await repo.fail(job.id, "late error from A", worker_id="A")
    with pytest.raises(LeaseLostError):
        await repo.reset_immediate(job.id)

    stored = await repo.get(job.id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.actual_data_size_bytes == 100


@pytest.mark.anyio
async def test_terminal_fail_skips_retry_budget(session_factory) -> None:
    repo = SqlJobQueueRepository(session_factory, backoff=NO_BACKOFF)
    await repo.enqueue(NewJob(symbol="AAPL", data_type="quote", priority=10, max_retries=3))
    (job,) = await repo.claim_batch(1, 1000)

    status = await repo.fail(
        job.id, "older write", error_code=StaleDataRejectedError.code, terminal=True
    )

    assert status is JobStatus.FAILED
    stored = await repo.get(job.id)
    assert stored is not None
    assert stored.retry_count == 0
