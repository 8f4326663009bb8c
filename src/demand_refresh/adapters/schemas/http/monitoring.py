# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Monitoring HTTP Schemas

Purpose:
    Response contracts for the queue health endpoints. ``metric_value`` and
    ``threshold`` are percentages for the rate checks and counts for the
    stuck-jobs check.

Layer: adapters/schemas/http
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from demand_refresh.adapters.schemas.http.base import BaseHTTPSchema
from demand_refresh.application.use_cases.monitoring.check_queue_health import CombinedHealth
from demand_refresh.domain.entities.alert import AlertResult


class AlertResultHTTP(BaseHTTPSchema):
    """One health check result."""

    alert_type: Literal["queue_success_rate", "quota_usage", "stuck_jobs"]
    status: Literal["healthy", "alert"]
    message: str
    metric_value: float = Field(..., examples=[97.5])
    threshold: float = Field(..., examples=[90.0])

    @classmethod
    def from_entity(cls, result: AlertResult) -> AlertResultHTTP:
        return cls.model_validate(result.to_dict())


class AllAlertsHTTP(BaseHTTPSchema):
    """Rollup of every health check."""

    status: Literal["healthy", "alert"]
    timestamp: datetime
    alerts: dict[str, AlertResultHTTP]

    @classmethod
    def from_combined(cls, combined: CombinedHealth) -> AllAlertsHTTP:
        return cls(
            status=combined.status.value,
            timestamp=combined.timestamp,
            alerts={a.alert_type.value: AlertResultHTTP.from_entity(a) for a in combined.alerts},
        )
