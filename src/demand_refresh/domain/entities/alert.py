# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Alert Result

Purpose:
    Transient outcome of one monitoring threshold check.

Layer: domain/entities
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from demand_refresh.domain.enums.alert import AlertStatus, AlertType


@dataclass(frozen=True, slots=True)
class AlertResult:
    """Result of a single health check."""

    alert_type: AlertType
    status: AlertStatus
    message: str
    metric_value: float
    threshold: float

    @property
    def is_alert(self) -> bool:
        return self.status is AlertStatus.ALERT

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_type": self.alert_type.value,
            "status": self.status.value,
            "message": self.message,
            "metric_value": self.metric_value,
            "threshold": self.threshold,
        }
