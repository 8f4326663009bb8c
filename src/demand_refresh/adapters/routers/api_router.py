# src/demand_refresh/adapters/routers/api_router.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""API Router Aggregator (Adapters Layer).

Purpose:
    Compose and expose the top-level `router` that includes all feature routers.

Responsibilities:
    • Mount health endpoints under `/health`.
    • Mount queue health checks at the root (`/queue-success-rate`, ...).

Layer:
    adapters/routers
"""

from __future__ import annotations

from fastapi import APIRouter

from demand_refresh.adapters.routers.health_router import router as health_router
from demand_refresh.adapters.routers.monitoring_router import router as monitoring_router

router = APIRouter()

# Health endpoints (liveness/readiness) under /health.
router.include_router(health_router, prefix="/health", tags=["Health"])

# Queue health checks consumed by external alerting.
router.include_router(monitoring_router, tags=["Monitoring"])
