# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Prometheus metrics utilities (registry-aware, hot-reload safe).

Every collector is obtained through an accessor that returns a *singleton*
bound to the **current** ``prometheus_client.REGISTRY``:

- Safe under hot reload and tests that swap the default registry.
- No duplicate-registration errors.
- Cache automatically resets when the active registry changes.

Collectors:
    * Readiness check latency histograms (DB, Redis).
    * Queue: jobs resolved by outcome, batch duration, jobs enqueued and
      reclaimed, quota-gated invocations.
    * Registry: reconciliation upserts/deletes, sweeper deletions.
    * Monitoring: alert state gauge per check (1 = alert, 0 = healthy).

Example:
    get_jobs_resolved_total().labels(outcome="completed", data_type="quote").inc()
"""

from __future__ import annotations

import logging
import threading
from contextlib import suppress
from typing import Final, TypeVar

import prometheus_client as prom
from prometheus_client import Counter, Gauge, Histogram

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Common histogram buckets (seconds)
_BUCKETS: Final[tuple[float, ...]] = (
    0.005,
    0.010,
    0.025,
    0.050,
    0.100,
    0.250,
    0.500,
    1.000,
    2.500,
    5.000,
    10.000,
)

_BATCH_BUCKETS: Final[tuple[float, ...]] = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0)

_C = TypeVar("_C", Counter, Gauge, Histogram)

# Cache keyed by metric name within the currently-active registry.
_registry_id: int | None = None
_cache: dict[str, Counter | Gauge | Histogram] = {}
_lock = threading.RLock()


# ---------------------------------------------------------------------------
# Registry-handling primitives


def _ensure_registry() -> None:
    """Reset the cache if the active registry changed (common in tests)."""
    global _registry_id
    with _lock:
        rid = id(prom.REGISTRY)
        if _registry_id is None or _registry_id != rid:
            _cache.clear()
            _registry_id = rid


def _lookup_existing(name: str, kind: type[_C]) -> _C | None:
    """Return a previously-registered collector of ``kind`` from the active registry."""
    with _lock, suppress(Exception):
        mapping = getattr(prom.REGISTRY, "_names_to_collectors", None)
        if isinstance(mapping, dict):
            col = mapping.get(name)
            if isinstance(col, kind):
                return col
    return None


def _get_or_create(name: str, kind: type[_C], help_text: str, **kwargs: object) -> _C:
    """Get or create a registry-bound collector with stable identity.

    Implements the following strategy:
    1. Return from module cache if present for the active registry.
    2. If the registry already has a collector by this name, reuse it.
    3. Otherwise, register a new collector on the active registry.
    4. If concurrent registration triggers a duplication error, retry step 2.

    Args:
        name: Metric name (snake_case).
        kind: ``Counter``, ``Gauge`` or ``Histogram``.
        help_text: Human-readable description.
        **kwargs: ``labelnames`` and, for histograms, ``buckets``.

    Returns:
        The collector bound to ``prom.REGISTRY``.
    """
    _ensure_registry()
    with _lock:
        cached = _cache.get(name)
        if isinstance(cached, kind):
            return cached

        existing = _lookup_existing(name, kind)
        if existing is not None:
            _cache[name] = existing
            return existing

        labelnames = tuple(kwargs.pop("labelnames", ()) or ())  # type: ignore[call-overload]
        try:
            collector = kind(name, help_text, labelnames, registry=prom.REGISTRY, **kwargs)  # type: ignore[arg-type]
        except ValueError as exc:
            if "Duplicated timeseries" in str(exc):
                again = _lookup_existing(name, kind)
                if again is not None:
                    _cache[name] = again
                    return again
            _log.exception("Failed to register Prometheus collector %s", name)
            raise
        _cache[name] = collector
        return collector


# ---------------------------------------------------------------------------
# Health metrics


def get_readyz_db_latency_seconds() -> Histogram:
    """Return the DB readiness latency histogram."""
    return _get_or_create(
        "readyz_db_latency_seconds",
        Histogram,
        "Latency of Postgres readiness check (seconds).",
        buckets=_BUCKETS,
    )


def get_readyz_redis_latency_seconds() -> Histogram:
    """Return the Redis readiness latency histogram."""
    return _get_or_create(
        "readyz_redis_latency_seconds",
        Histogram,
        "Latency of Redis readiness check (seconds).",
        buckets=_BUCKETS,
    )


# ---------------------------------------------------------------------------
# Queue metrics


def get_jobs_resolved_total() -> Counter:
    """Return the counter of processed jobs.

    Labels:
        outcome: ``completed|retry|failed|reset``.
        data_type: Job data type.
    """
    return _get_or_create(
        "refresh_jobs_resolved_total",
        Counter,
        "Refresh jobs resolved by the batch processor",
        labelnames=("outcome", "data_type"),
    )


def get_batch_duration_seconds() -> Histogram:
    """Return the histogram of processor invocation durations."""
    return _get_or_create(
        "refresh_batch_duration_seconds",
        Histogram,
        "Wall time of one batch processor invocation (seconds)",
        buckets=_BATCH_BUCKETS,
    )


def get_batch_invocations_total() -> Counter:
    """Return the counter of processor invocations.

    Labels:
        result: ``ok|empty|quota_exceeded|timeout|error``.
    """
    return _get_or_create(
        "refresh_batch_invocations_total",
        Counter,
        "Batch processor invocations by result",
        labelnames=("result",),
    )


def get_jobs_enqueued_total() -> Counter:
    """Return the counter of enqueued jobs (labels: ``data_type``)."""
    return _get_or_create(
        "refresh_jobs_enqueued_total",
        Counter,
        "Refresh jobs inserted into the queue",
        labelnames=("data_type",),
    )


def get_jobs_reclaimed_total() -> Counter:
    """Return the counter of stuck jobs returned to pending."""
    return _get_or_create(
        "refresh_jobs_reclaimed_total",
        Counter,
        "Processing jobs whose lease expired and were reset to pending",
    )


# ---------------------------------------------------------------------------
# Registry metrics


def get_reconcile_changes_total() -> Counter:
    """Return the counter of registry rows touched by reconciliation.

    Labels:
        action: ``upsert|delete``.
    """
    return _get_or_create(
        "refresh_reconcile_changes_total",
        Counter,
        "Subscription registry rows upserted or deleted by reconciliation",
        labelnames=("action",),
    )


def get_sweeper_deleted_total() -> Counter:
    """Return the counter of rows removed by the staleness sweeper.

    Labels:
        kind: ``subscription|job``.
    """
    return _get_or_create(
        "refresh_sweeper_deleted_total",
        Counter,
        "Rows removed by the staleness sweeper",
        labelnames=("kind",),
    )


# ---------------------------------------------------------------------------
# Monitoring metrics


def get_alert_state() -> Gauge:
    """Return the gauge of the latest result per health check.

    Labels:
        alert_type: ``queue_success_rate|quota_usage|stuck_jobs``.
    """
    return _get_or_create(
        "refresh_alert_state",
        Gauge,
        "Latest health check result (1 = alert, 0 = healthy)",
        labelnames=("alert_type",),
    )
