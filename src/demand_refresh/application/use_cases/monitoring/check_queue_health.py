# src/demand_refresh/application/use_cases/monitoring/check_queue_health.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Use case: Threshold health checks over the refresh queue.

Three independent checks, each returning an :class:`AlertResult`:

* Success rate: ``completed / (completed + failed)`` over a trailing window
  of ``processed_at``. Stale-data rejections are a handler refusing to
  overwrite fresher data and do not count as failures. With no resolved
  jobs the rate is 100%. Alert when the rate is *below* the threshold.
* Quota usage: bytes completed inside the quota window over the budget.
  Alert when usage is strictly *above* the threshold (exactly at the
  threshold is healthy).
* Stuck jobs: ``processing`` jobs whose lease expired. Alert when the count
  is strictly above the threshold.

Rates are reported as percentages in ``metric_value`` and ``threshold``.
A failure to read the store raises ``MonitoringQueryError``; it is never
reported as an alert.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar

from demand_refresh.domain.entities.alert import AlertResult
from demand_refresh.domain.enums.alert import AlertStatus, AlertType
from demand_refresh.domain.exceptions.monitoring import MonitoringQueryError
from demand_refresh.domain.interfaces.repositories.job_queue_repository import (
    JobQueueRepository,
)
from demand_refresh.domain.services.clock import Clock, system_clock
from demand_refresh.domain.services.quota import QuotaPolicy
from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.observability.metrics import get_alert_state

logger = get_json_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class MonitorThresholds:
    """Alert thresholds and windows."""

    success_rate: float = 0.90
    success_window: timedelta = timedelta(minutes=60)
    stuck_jobs: int = 10
    lease_timeout: timedelta = timedelta(minutes=5)


@dataclass(frozen=True)
class CombinedHealth:
    """All checks plus the overall rollup."""

    status: AlertStatus
    timestamp: datetime
    alerts: tuple[AlertResult, ...]

    @property
    def is_alert(self) -> bool:
        return self.status is AlertStatus.ALERT

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "alerts": {a.alert_type.value: a.to_dict() for a in self.alerts},
        }


class CheckQueueHealthUseCase:
    """Compute the queue health checks."""

    def __init__(
        self,
        *,
        jobs: JobQueueRepository,
        quota: QuotaPolicy,
        thresholds: MonitorThresholds | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._jobs = jobs
        self._quota = quota
        self._thresholds = thresholds or MonitorThresholds()
        self._clock = clock or system_clock

    async def check_success_rate(self) -> AlertResult:
        since = self._clock() - self._thresholds.success_window
        counts = await self._query("queue_success_rate", lambda: self._jobs.count_resolved(since))

        failed = max(counts.failed - counts.stale_rejected, 0)
        resolved = counts.completed + failed
        rate = 1.0 if resolved == 0 else counts.completed / resolved
        alert = rate < self._thresholds.success_rate
        pct = rate * 100.0
        threshold_pct = self._thresholds.success_rate * 100.0
        if alert:
            message = (
                f"Queue success rate is {pct:.2f}% (below {threshold_pct:g}% threshold). "
                f"{failed} actual failures, {counts.stale_rejected} stale data rejections "
                "(expected)."
            )
        else:
            message = (
                f"Queue success rate is {pct:.2f}% ({failed} actual failures, "
                f"{counts.stale_rejected} stale data rejections excluded)"
            )
        return self._result(AlertType.QUEUE_SUCCESS_RATE, alert, message, pct, threshold_pct)

    async def check_quota_usage(self) -> AlertResult:
        since = self._clock() - self._quota.window
        used = await self._query("quota_usage", lambda: self._jobs.sum_completed_bytes(since))

        ratio = self._quota.usage_ratio(used)
        alert = ratio > self._quota.alert_threshold
        pct = ratio * 100.0
        threshold_pct = self._quota.alert_threshold * 100.0
        message = (
            f"Quota usage is {pct:.2f}% (above {threshold_pct:g}% threshold)"
            if alert
            else f"Quota usage is {pct:.2f}%"
        )
        return self._result(AlertType.QUOTA_USAGE, alert, message, pct, threshold_pct)

    async def check_stuck_jobs(self) -> AlertResult:
        summary = await self._query(
            "stuck_jobs", lambda: self._jobs.stuck_jobs(self._thresholds.lease_timeout)
        )
        limit = self._thresholds.stuck_jobs
        alert = summary.count > limit
        message = (
            f"{summary.count} stuck jobs detected (above {limit} threshold) "
            f"affecting {len(summary.data_types)} data types"
            if alert
            else f"{summary.count} stuck jobs (within threshold)"
        )
        return self._result(AlertType.STUCK_JOBS, alert, message, float(summary.count), float(limit))

    async def check_all(self) -> CombinedHealth:
        """Run the three checks concurrently and roll them up.

        Raises:
            MonitoringQueryError: If any check fails to read the store.
        """
        results = await asyncio.gather(
            self.check_success_rate(),
            self.check_quota_usage(),
            self.check_stuck_jobs(),
        )
        status = (
            AlertStatus.ALERT if any(r.is_alert for r in results) else AlertStatus.HEALTHY
        )
        return CombinedHealth(status=status, timestamp=self._clock(), alerts=tuple(results))

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    async def _query(self, check: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        except MonitoringQueryError:
            raise
        except Exception as exc:
            logger.exception("monitor.query_failed", extra={"extra": {"check": check}})
            raise MonitoringQueryError(
                f"Failed to check {check.replace('_', ' ')}: {exc}",
                details={"check": check},
            ) from exc

    @staticmethod
    def _result(
        alert_type: AlertType,
        alert: bool,
        message: str,
        metric_value: float,
        threshold: float,
    ) -> AlertResult:
        status = AlertStatus.ALERT if alert else AlertStatus.HEALTHY
        get_alert_state().labels(alert_type=alert_type.value).set(1 if alert else 0)
        if alert:
            logger.warning(
                "monitor.alert",
                extra={"extra": {"alert_type": alert_type.value, "metric_value": metric_value}},
            )
        return AlertResult(
            alert_type=alert_type,
            status=status,
            message=message,
            metric_value=round(metric_value, 4),
            threshold=threshold,
        )
