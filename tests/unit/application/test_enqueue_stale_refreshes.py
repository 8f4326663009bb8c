# tests/unit/application/test_enqueue_stale_refreshes.py
from __future__ import annotations

import pytest

from demand_refresh.adapters.repositories.in_memory import (
    InMemoryJobQueueRepository,
    InMemorySubscriptionRepository,
)
from demand_refresh.application.use_cases.queue.enqueue_stale_refreshes import (
    EnqueueStaleRefreshesUseCase,
    RecentCompletionFreshnessCheck,
)
from demand_refresh.domain.entities.presence import DemandKey
from demand_refresh.domain.enums.job import JobStatus
from demand_refresh.domain.services.data_type_catalog import DataTypeCatalog


@pytest.fixture
def catalog() -> DataTypeCatalog:
    return DataTypeCatalog()


@pytest.fixture
def subscriptions(clock) -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository(clock=clock)


@pytest.fixture
def jobs(clock) -> InMemoryJobQueueRepository:
    return InMemoryJobQueueRepository(clock=clock)


@pytest.fixture
def use_case(subscriptions, jobs, catalog, clock) -> EnqueueStaleRefreshesUseCase:
    return EnqueueStaleRefreshesUseCase(
        subscriptions=subscriptions,
        jobs=jobs,
        freshness=RecentCompletionFreshnessCheck(jobs=jobs, catalog=catalog, clock=clock),
        catalog=catalog,
    )


async def _complete_all(jobs: InMemoryJobQueueRepository) -> None:
    for job in await jobs.claim_batch(100, 10_000):
        await jobs.complete(job.id, 1)


@pytest.mark.anyio
async def test_demanded_pairs_without_history_are_enqueued_with_policy(
    use_case, subscriptions, jobs, catalog, clock
) -> None:
    await subscriptions.upsert_many(
        [
            DemandKey("u1", "AAPL", "quote"),
            DemandKey("u2", "AAPL", "quote"),
            DemandKey("u1", "AAPL", "financial-statements"),
        ],
        seen_at=clock(),
    )

    result = await use_case.execute()

    assert (result.pairs, result.stale, result.enqueued) == (2, 2, 2)
    by_type = {j.data_type: j for j in await jobs.all_jobs()}
    statements = catalog.policy_for("financial-statements")
    assert by_type["quote"].priority < by_type["financial-statements"].priority
    assert by_type["financial-statements"].max_retries == statements.max_retries
    assert by_type["financial-statements"].estimated_data_size_bytes == (
        statements.estimated_size_bytes
    )


@pytest.mark.anyio
async def test_second_pass_is_idempotent_while_jobs_are_queued(
    use_case, subscriptions, jobs, clock
) -> None:
    await subscriptions.upsert_many([DemandKey("u1", "AAPL", "quote")], seen_at=clock())

    await use_case.execute()
    again = await use_case.execute()

    assert (again.stale, again.enqueued, again.already_queued) == (1, 0, 1)
    assert len(await jobs.all_jobs()) == 1


@pytest.mark.anyio
async def test_fresh_data_is_not_refreshed_until_ttl_elapses(
    use_case, subscriptions, jobs, clock
) -> None:
    await subscriptions.upsert_many([DemandKey("u1", "AAPL", "quote")], seen_at=clock())
    await use_case.execute()
    await _complete_all(jobs)

    clock.advance(seconds=30)
    assert (await use_case.execute()).stale == 0

    clock.advance(seconds=30)
    result = await use_case.execute()
    assert result.enqueued == 1
    pending = [j for j in await jobs.all_jobs() if j.status is JobStatus.PENDING]
    assert len(pending) == 1


@pytest.mark.anyio
async def test_enqueue_for_normalizes_symbol_and_accepts_priority_override(
    use_case, jobs
) -> None:
    result = await use_case.enqueue_for(" aapl ", ["quote", "profile", ""], priority=1)

    assert (result.pairs, result.enqueued) == (2, 2)
    assert {(j.symbol, j.priority) for j in await jobs.all_jobs()} == {("AAPL", 1)}


@pytest.mark.anyio
async def test_enqueue_for_rejects_blank_symbol(use_case) -> None:
    with pytest.raises(ValueError):
        await use_case.enqueue_for("  ", ["quote"])
