# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Monitoring Exceptions

Layer: domain/exceptions
"""
from __future__ import annotations

from .base import DomainError


class MonitoringQueryError(DomainError):
    """A health check could not read the queue or registry."""

    code = "MONITORING_QUERY_FAILED"
