# tests/unit/adapters/test_routers.py
"""HTTP surface: monitoring, health and metrics routes over in-memory services."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime

import httpx
import pytest
from fastapi import FastAPI

from demand_refresh.adapters.repositories.in_memory import (
    InMemoryJobQueueRepository,
    InMemorySubscriptionRepository,
)
from demand_refresh.adapters.routers.monitoring_router import monitor_provider
from demand_refresh.application.use_cases.monitoring.check_queue_health import CombinedHealth
from demand_refresh.config.settings import Settings
from demand_refresh.dependencies.refresh import RefreshServices, build_catalog, build_quota
from demand_refresh.domain.entities.alert import AlertResult
from demand_refresh.domain.entities.presence import PresenceSnapshot
from demand_refresh.domain.enums.alert import AlertStatus, AlertType
from demand_refresh.domain.exceptions.monitoring import MonitoringQueryError
from demand_refresh.domain.interfaces.repositories.job_queue_repository import NewJob
from demand_refresh.main import create_app


class _StaticPresence:
    async def fetch_snapshot(self) -> PresenceSnapshot:
        return PresenceSnapshot()


class _HealthCheck:
    def __init__(self, *, db: bool = True, redis: bool = True) -> None:
        self._db, self._redis = db, redis

    async def db(self) -> tuple[bool, str | None]:
        return self._db, None if self._db else "OperationalError"

    async def redis(self) -> tuple[bool, str | None]:
        return self._redis, None if self._redis else "ConnectionError"


class _BrokenMonitor:
    async def check_success_rate(self) -> AlertResult:
        raise MonitoringQueryError("Failed to check queue success rate: db down")

    async def check_quota_usage(self) -> AlertResult:
        raise MonitoringQueryError("Failed to check quota usage: db down")

    async def check_stuck_jobs(self) -> AlertResult:
        raise MonitoringQueryError("Failed to check stuck jobs: db down")

    async def check_all(self) -> CombinedHealth:
        raise MonitoringQueryError("Failed to check queue success rate: db down")


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings(QUOTA_BYTES="10000")


@pytest.fixture
def services(settings: Settings) -> RefreshServices:
    return RefreshServices(
        settings=settings,
        subscriptions=InMemorySubscriptionRepository(),
        jobs=InMemoryJobQueueRepository(),
        presence=_StaticPresence(),
        catalog=build_catalog(settings),
        quota=build_quota(settings),
    )


@pytest.fixture
def app(services: RefreshServices) -> FastAPI:
    app = create_app(with_lifespan=False)
    app.state.services = services
    app.state.health_check = _HealthCheck()
    return app


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _complete(services: RefreshServices, symbol: str, size: int) -> None:
    job = await services.jobs.enqueue(
        NewJob(symbol=symbol, data_type="quote", priority=10, max_retries=0)
    )
    assert job is not None
    await services.jobs.claim_batch(1, 1000)
    await services.jobs.complete(job.id, size)


# --------------------------------------------------------------------------- #
# Monitoring
# --------------------------------------------------------------------------- #


@pytest.mark.anyio
async def test_healthy_checks_return_200(client: httpx.AsyncClient) -> None:
    for path in ("/queue-success-rate", "/quota-usage", "/stuck-jobs"):
        resp = await client.get(path)
        assert resp.status_code == 200, path
        assert resp.json()["status"] == "healthy"

    resp = await client.get("/all-alerts")
    body = resp.json()
    assert resp.status_code == 200
    assert body["status"] == "healthy"
    assert set(body["alerts"]) == {"queue_success_rate", "quota_usage", "stuck_jobs"}
    assert body["alerts"]["queue_success_rate"]["metric_value"] == 100.0
    datetime.fromisoformat(body["timestamp"])


@pytest.mark.anyio
async def test_quota_alert_returns_503_with_full_result(
    client: httpx.AsyncClient, services: RefreshServices
) -> None:
    await _complete(services, "AAPL", 8_001)

    resp = await client.get("/quota-usage")

    assert resp.status_code == 503
    body = resp.json()
    assert body["alert_type"] == "quota_usage"
    assert body["status"] == "alert"
    assert body["metric_value"] == pytest.approx(80.01)
    assert body["threshold"] == pytest.approx(80.0)
    assert "above 80% threshold" in body["message"]

    all_alerts = await client.get("/all-alerts")
    assert all_alerts.status_code == 503
    assert all_alerts.json()["alerts"]["stuck_jobs"]["status"] == "healthy"


@pytest.mark.anyio
async def test_query_failure_is_a_500_error_not_an_alert(
    app: FastAPI, client: httpx.AsyncClient
) -> None:
    app.dependency_overrides[monitor_provider] = lambda: _BrokenMonitor()

    resp = await client.get("/stuck-jobs")

    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "MONITORING_QUERY_FAILED"
    assert error["message"].startswith("Failed to check stuck jobs")


@pytest.mark.anyio
async def test_override_can_inject_static_results(app: FastAPI, client: httpx.AsyncClient) -> None:
    result = AlertResult(AlertType.STUCK_JOBS, AlertStatus.ALERT, "11 stuck", 11.0, 10.0)

    class _Monitor(_BrokenMonitor):
        async def check_stuck_jobs(self) -> AlertResult:
            return result

    app.dependency_overrides[monitor_provider] = lambda: _Monitor()

    resp = await client.get("/stuck-jobs")

    assert resp.status_code == 503
    assert resp.json()["message"] == "11 stuck"


# --------------------------------------------------------------------------- #
# Health and metrics
# --------------------------------------------------------------------------- #


@pytest.mark.anyio
async def test_liveness(client: httpx.AsyncClient) -> None:
    resp = await client.get("/health/z")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.anyio
async def test_readiness_reports_each_dependency(app: FastAPI, client: httpx.AsyncClient) -> None:
    ok = await client.get("/health/readiness")
    assert ok.status_code == 200
    assert ok.json()["status"] == "ok"

    app.state.health_check = _HealthCheck(redis=False)
    degraded = await client.get("/health/readiness")
    assert degraded.status_code == 503
    checks = {c["name"]: c for c in degraded.json()["checks"]}
    assert checks["db"]["status"] == "ok"
    assert checks["redis"]["status"] == "down"
    assert checks["redis"]["detail"] == "ConnectionError"


@pytest.mark.anyio
async def test_metrics_exposes_refresh_collectors(
    client: httpx.AsyncClient, services: RefreshServices
) -> None:
    await client.get("/quota-usage")

    resp = await client.get("/metrics")

    assert resp.status_code == 200
    assert "readyz_db_latency_seconds" in resp.text
    assert 'refresh_alert_state{alert_type="quota_usage"}' in resp.text
