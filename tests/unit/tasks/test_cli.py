# tests/unit/tasks/test_cli.py
from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import pytest
from typer.testing import CliRunner

from demand_refresh.adapters.repositories.in_memory import (
    InMemoryJobQueueRepository,
    InMemorySubscriptionRepository,
)
from demand_refresh.dependencies.refresh import RefreshServices, build_catalog, build_quota
from demand_refresh.domain.entities.presence import PresenceSnapshot
from demand_refresh.domain.exceptions.base import ConfigurationError
from demand_refresh.domain.exceptions.presence import PresenceUnreachableError
from demand_refresh.domain.interfaces.handlers.job_handler import HandlerResult
from demand_refresh.domain.interfaces.repositories.job_queue_repository import NewJob
from demand_refresh.tasks import cli

runner = CliRunner()


class _Presence:
    def __init__(self, error: Exception | None = None) -> None:
        self._error = error

    async def fetch_snapshot(self) -> PresenceSnapshot:
        if self._error is not None:
            raise self._error
        return PresenceSnapshot()


class _OkHandler:
    async def handle(self, symbol: str, job_metadata: Mapping[str, Any]) -> HandlerResult:
        return HandlerResult(data_size_bytes=10)


@pytest.fixture
def make_services(make_settings):
    def _make(*, jobs: InMemoryJobQueueRepository | None = None, presence=None, **env):
        settings = make_settings(QUOTA_BYTES="10000", **env)
        return RefreshServices(
            settings=settings,
            subscriptions=InMemorySubscriptionRepository(),
            jobs=jobs if jobs is not None else InMemoryJobQueueRepository(),
            presence=presence if presence is not None else _Presence(),
            catalog=build_catalog(settings),
            quota=build_quota(settings),
        )

    return _make


@pytest.fixture
def use_services(monkeypatch: pytest.MonkeyPatch):
    """Route the CLI to the given services instead of real infrastructure."""

    def _use(services: RefreshServices) -> None:
        @asynccontextmanager
        async def _fake_bootstrap() -> AsyncIterator[object]:
            yield object()

        monkeypatch.setattr(cli, "bootstrap", _fake_bootstrap)
        monkeypatch.setattr(cli, "build_services", lambda state: services)

    return _use


def _json(stdout: str) -> dict[str, Any]:
    return json.loads(stdout.strip().splitlines()[-1])


def test_alerts_exit_zero_when_healthy(make_services, use_services) -> None:
    use_services(make_services())

    result = runner.invoke(cli.app, ["alerts"])

    assert result.exit_code == 0
    assert _json(result.stdout)["status"] == "healthy"


def test_alerts_exit_two_on_alert(make_services, use_services) -> None:
    jobs = InMemoryJobQueueRepository()

    async def _burn_quota() -> None:
        job = await jobs.enqueue(
            NewJob(symbol="AAPL", data_type="quote", priority=1, max_retries=0)
        )
        assert job is not None
        await jobs.claim_batch(1, 1000)
        await jobs.complete(job.id, 9_000)

    asyncio.run(_burn_quota())
    use_services(make_services(jobs=jobs))

    result = runner.invoke(cli.app, ["alerts"])

    assert result.exit_code == cli.EXIT_ALERT
    payload = _json(result.stdout)
    assert payload["alerts"]["quota_usage"]["status"] == "alert"


def test_reclaim_prints_count(make_services, use_services, clock) -> None:
    jobs = InMemoryJobQueueRepository(clock=clock)

    async def _strand() -> None:
        await jobs.enqueue(NewJob(symbol="AAPL", data_type="quote", priority=1, max_retries=3))
        await jobs.claim_batch(1, 1000)

    asyncio.run(_strand())
    clock.advance(minutes=10)
    use_services(make_services(jobs=jobs))

    result = runner.invoke(cli.app, ["reclaim"])

    assert result.exit_code == 0
    assert _json(result.stdout) == {"reclaimed": 1}


def test_enqueue_stale_for_one_symbol(make_services, use_services) -> None:
    services = make_services()
    use_services(services)

    result = runner.invoke(
        cli.app, ["enqueue-stale", "--symbol", "aapl", "--data-type", "quote"]
    )

    assert result.exit_code == 0
    assert _json(result.stdout)["enqueued"] == 1


def test_enqueue_stale_symbol_requires_data_type(make_services, use_services) -> None:
    use_services(make_services())

    result = runner.invoke(cli.app, ["enqueue-stale", "--symbol", "AAPL"])

    assert result.exit_code != 0


def test_domain_error_exits_with_one(make_services, use_services) -> None:
    use_services(make_services(presence=_Presence(PresenceUnreachableError("down"))))

    result = runner.invoke(cli.app, ["reconcile"])

    assert result.exit_code == cli.EXIT_ERROR


def test_process_batch_without_handlers_exits_with_one(make_services, use_services) -> None:
    use_services(make_services())

    result = runner.invoke(cli.app, ["process-batch"])

    assert result.exit_code == cli.EXIT_ERROR


def test_worker_requires_handlers(make_services) -> None:
    with pytest.raises(ConfigurationError):
        cli.build_worker_tasks(make_services())


def test_worker_builds_one_task_per_loop(make_services) -> None:
    services = make_services()
    services.handlers = {"quote": _OkHandler()}

    tasks = cli.build_worker_tasks(services)

    assert [t.name for t in tasks] == ["reconcile", "sweep", "reclaim", "enqueue", "process"]
