# tests/unit/application/test_registry_use_cases.py
from __future__ import annotations

from datetime import timedelta

import fakeredis.aioredis
import pytest

from demand_refresh.adapters.gateways.redis_presence_channel import RedisPresenceChannel
from demand_refresh.adapters.repositories.in_memory import (
    InMemoryJobQueueRepository,
    InMemorySubscriptionRepository,
)
from demand_refresh.application.use_cases.registry.reconcile_subscriptions import (
    ReconcileSubscriptionsUseCase,
)
from demand_refresh.application.use_cases.registry.sweep_stale_subscriptions import (
    SweepStaleSubscriptionsUseCase,
)
from demand_refresh.domain.entities.presence import (
    DemandKey,
    PresenceSnapshot,
    PresenceState,
    PresenceTopic,
)
from demand_refresh.domain.exceptions.presence import PresenceUnreachableError
from demand_refresh.domain.interfaces.repositories.job_queue_repository import NewJob


class _ScriptedPresence:
    """Returns queued snapshots in order; an exception entry is raised instead."""

    def __init__(self, *snapshots: PresenceSnapshot | Exception) -> None:
        self._queue = list(snapshots)

    async def fetch_snapshot(self) -> PresenceSnapshot:
        item = self._queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _snapshot(**topics: list[tuple[str, str, tuple[str, ...]]]) -> PresenceSnapshot:
    return PresenceSnapshot(
        topics=tuple(
            PresenceTopic(
                f"entity:{symbol}",
                tuple(PresenceState(c, u, types) for c, u, types in entries),
            )
            for symbol, entries in topics.items()
        )
    )


# --------------------------------------------------------------------------- #
# Reconciliation
# --------------------------------------------------------------------------- #


@pytest.mark.anyio
async def test_reconcile_keeps_demand_still_held_by_another_consumer(clock) -> None:
    fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
    channel = RedisPresenceChannel(fake, namespace="test:presence")
    subscriptions = InMemorySubscriptionRepository(clock=clock)
    use_case = ReconcileSubscriptionsUseCase(
        presence=channel, subscriptions=subscriptions, clock=clock
    )

    await channel.announce("consumer1", "u1", "AAPL", ["quote", "profile"])
    await channel.announce("consumer2", "u2", "AAPL", ["profile"])
    await use_case.execute()

    await channel.withdraw("consumer1", "AAPL")
    result = await use_case.execute()

    assert await subscriptions.list_keys() == {DemandKey("u2", "AAPL", "profile")}
    assert result.deleted == 2
    assert await subscriptions.list_demand_pairs() == [("AAPL", "profile")]


@pytest.mark.anyio
async def test_reconcile_is_idempotent_apart_from_last_seen(clock) -> None:
    snap = _snapshot(AAPL=[("c1", "u1", ("quote",))], MSFT=[("c2", "u1", ("profile",))])
    subscriptions = InMemorySubscriptionRepository(clock=clock)
    use_case = ReconcileSubscriptionsUseCase(
        presence=_ScriptedPresence(snap, snap), subscriptions=subscriptions, clock=clock
    )

    first = await use_case.execute()
    rows_before = await subscriptions.list_all()
    clock.advance(seconds=60)
    second = await use_case.execute()
    rows_after = await subscriptions.list_all()

    assert (first.needed, first.upserted, first.deleted) == (2, 2, 0)
    assert (second.needed, second.deleted) == (2, 0)
    assert [r.key for r in rows_after] == [r.key for r in rows_before]
    assert [r.subscribed_at for r in rows_after] == [r.subscribed_at for r in rows_before]
    assert all(r.last_seen_at == clock() for r in rows_after)


@pytest.mark.anyio
async def test_empty_snapshot_clears_the_registry(clock) -> None:
    subscriptions = InMemorySubscriptionRepository(clock=clock)
    await subscriptions.upsert_many([DemandKey("u1", "AAPL", "quote")], seen_at=clock())
    use_case = ReconcileSubscriptionsUseCase(
        presence=_ScriptedPresence(PresenceSnapshot()), subscriptions=subscriptions
    )

    result = await use_case.execute()

    assert result.deleted == 1
    assert await subscriptions.list_keys() == set()


@pytest.mark.anyio
async def test_unreachable_presence_leaves_registry_untouched(clock) -> None:
    subscriptions = InMemorySubscriptionRepository(clock=clock)
    key = DemandKey("u1", "AAPL", "quote")
    await subscriptions.upsert_many([key], seen_at=clock())
    use_case = ReconcileSubscriptionsUseCase(
        presence=_ScriptedPresence(PresenceUnreachableError("down")),
        subscriptions=subscriptions,
    )

    with pytest.raises(PresenceUnreachableError):
        await use_case.execute()

    assert await subscriptions.list_keys() == {key}


# --------------------------------------------------------------------------- #
# Staleness sweeper
# --------------------------------------------------------------------------- #


@pytest.mark.anyio
async def test_sweeper_deletes_only_rows_strictly_older_than_threshold(clock) -> None:
    subscriptions = InMemorySubscriptionRepository(clock=clock)
    threshold = timedelta(minutes=5)
    at_edge = DemandKey("u1", "AAPL", "quote")
    expired = DemandKey("u2", "AAPL", "quote")
    fresh = DemandKey("u3", "AAPL", "quote")
    await subscriptions.upsert_many([expired], seen_at=clock() - threshold - timedelta(seconds=1))
    await subscriptions.upsert_many([at_edge], seen_at=clock() - threshold)
    await subscriptions.upsert_many([fresh], seen_at=clock())

    result = await SweepStaleSubscriptionsUseCase(
        subscriptions=subscriptions, staleness_threshold=threshold, clock=clock
    ).execute()

    assert result.subscriptions_deleted == 1
    assert result.jobs_purged == 0
    assert await subscriptions.list_keys() == {at_edge, fresh}


@pytest.mark.anyio
async def test_sweeper_purges_expired_terminal_jobs(clock) -> None:
    subscriptions = InMemorySubscriptionRepository(clock=clock)
    jobs = InMemoryJobQueueRepository(clock=clock)
    job = await jobs.enqueue(NewJob(symbol="AAPL", data_type="quote", priority=1, max_retries=3))
    assert job is not None
    await jobs.claim_batch(1, 1000)
    await jobs.complete(job.id, 10)
    clock.advance(days=8)

    result = await SweepStaleSubscriptionsUseCase(
        subscriptions=subscriptions,
        staleness_threshold=timedelta(minutes=5),
        jobs=jobs,
        job_retention=timedelta(days=7),
        clock=clock,
    ).execute()

    assert result.jobs_purged == 1
    assert await jobs.all_jobs() == []


def test_sweeper_rejects_non_positive_threshold() -> None:
    with pytest.raises(ValueError):
        SweepStaleSubscriptionsUseCase(
            subscriptions=InMemorySubscriptionRepository(), staleness_threshold=timedelta(0)
        )
