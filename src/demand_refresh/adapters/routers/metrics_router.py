# src/demand_refresh/adapters/routers/metrics_router.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Prometheus scrape endpoint (`/metrics`).

Readiness histograms are created lazily; this router observes them once at
0.0s so their `_bucket`/`_count`/`_sum` series exist on the very first scrape.

Layer:
    adapters/routers
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.observability.metrics import (
    get_readyz_db_latency_seconds,
    get_readyz_redis_latency_seconds,
)

if TYPE_CHECKING:  # typing-only
    from prometheus_client import Histogram

logger = get_json_logger(__name__)
router = APIRouter()

_warmed = False


def _ensure_observed_once(getter: Callable[[], Histogram], name: str) -> None:
    try:
        getter().observe(0.0)
    except ValueError as exc:
        logger.debug(
            "metrics_router: failed warming histogram",
            extra={"extra": {"metric": name, "error": str(exc)}},
        )


@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint() -> Response:
    """Expose Prometheus metrics in text format."""
    global _warmed
    if not _warmed:
        _ensure_observed_once(get_readyz_db_latency_seconds, "readyz_db_latency_seconds")
        _ensure_observed_once(get_readyz_redis_latency_seconds, "readyz_redis_latency_seconds")
        _warmed = True
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
