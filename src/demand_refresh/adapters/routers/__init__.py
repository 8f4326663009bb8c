# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Routers Package Export (Adapters Layer).

Purpose:
    Provide stable, explicit exports for the application router aggregator
    (`api_router`) and the metrics router (`metrics_router`).

Layer:
    adapters/routers
"""

from __future__ import annotations

from .api_router import router as api_router
from .metrics_router import router as metrics_router

__all__ = ["api_router", "metrics_router"]
