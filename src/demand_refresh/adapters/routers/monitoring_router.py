# src/demand_refresh/adapters/routers/monitoring_router.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Queue health endpoints (Adapters Layer).

Purpose:
    Expose the monitor's threshold checks to external alerting.

Status codes:
    * 200: the check is healthy.
    * 503: the check is in alert (the body still carries the full result).
    * 500: the check could not be computed (``MonitoringQueryError``), rendered
      as an error envelope by the application exception handlers.

Design:
    * The use case is injected through a provider instance (`monitor_provider`)
      so tests can override it by identity.
"""

from __future__ import annotations

from typing import Annotated, Protocol

from fastapi import APIRouter, Depends, Request, Response, status

from demand_refresh.adapters.schemas.http.monitoring import AlertResultHTTP, AllAlertsHTTP
from demand_refresh.application.use_cases.monitoring.check_queue_health import CombinedHealth
from demand_refresh.domain.entities.alert import AlertResult
from demand_refresh.infrastructure.logging.logger import get_json_logger

logger = get_json_logger(__name__)
router = APIRouter()

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    503: {"description": "Threshold breached"},
    500: {"description": "Health check could not be computed"},
}


class QueueHealthMonitor(Protocol):
    """What the routes need from the monitoring use case."""

    async def check_success_rate(self) -> AlertResult: ...
    async def check_quota_usage(self) -> AlertResult: ...
    async def check_stuck_jobs(self) -> AlertResult: ...
    async def check_all(self) -> CombinedHealth: ...


class MonitorProvider:
    """Dependency token returning the monitor built during application startup."""

    def __call__(self, request: Request) -> QueueHealthMonitor:
        services = request.app.state.services
        monitor: QueueHealthMonitor = services.monitor()
        return monitor


monitor_provider = MonitorProvider()

MonitorDep = Annotated[QueueHealthMonitor, Depends(monitor_provider, use_cache=False)]


def _single(response: Response, result: AlertResult) -> AlertResultHTTP:
    if result.is_alert:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return AlertResultHTTP.from_entity(result)


@router.get(
    "/queue-success-rate",
    summary="Queue success rate",
    operation_id="monitoring_queue_success_rate",
    response_model=AlertResultHTTP,
    responses=_ERROR_RESPONSES,
)
async def queue_success_rate(response: Response, monitor: MonitorDep) -> AlertResultHTTP:
    """Completed vs failed jobs over the trailing window (stale rejections excluded)."""
    return _single(response, await monitor.check_success_rate())


@router.get(
    "/quota-usage",
    summary="Data-transfer quota usage",
    operation_id="monitoring_quota_usage",
    response_model=AlertResultHTTP,
    responses=_ERROR_RESPONSES,
)
async def quota_usage(response: Response, monitor: MonitorDep) -> AlertResultHTTP:
    return _single(response, await monitor.check_quota_usage())


@router.get(
    "/stuck-jobs",
    summary="Stuck jobs",
    operation_id="monitoring_stuck_jobs",
    response_model=AlertResultHTTP,
    responses=_ERROR_RESPONSES,
)
async def stuck_jobs(response: Response, monitor: MonitorDep) -> AlertResultHTTP:
    return _single(response, await monitor.check_stuck_jobs())


@router.get(
    "/all-alerts",
    summary="All health checks",
    operation_id="monitoring_all_alerts",
    response_model=AllAlertsHTTP,
    responses=_ERROR_RESPONSES,
)
async def all_alerts(response: Response, monitor: MonitorDep) -> AllAlertsHTTP:
    """Run every check; 503 when any of them is in alert."""
    combined = await monitor.check_all()
    if combined.is_alert:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning(
            "monitoring.alerts_active",
            extra={
                "extra": {"alerts": [a.alert_type.value for a in combined.alerts if a.is_alert]}
            },
        )
    return AllAlertsHTTP.from_combined(combined)
