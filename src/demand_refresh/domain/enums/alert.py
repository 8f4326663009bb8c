# src/demand_refresh/domain/enums/alert.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Monitoring alert enumerations.

Layer:
    domain/enums
"""

from __future__ import annotations

from enum import Enum


class AlertStatus(str, Enum):
    """Outcome of a single health threshold check."""

    HEALTHY = "healthy"
    ALERT = "alert"


class AlertType(str, Enum):
    """Identifiers for the independent health checks."""

    QUEUE_SUCCESS_RATE = "queue_success_rate"
    QUOTA_USAGE = "quota_usage"
    STUCK_JOBS = "stuck_jobs"
