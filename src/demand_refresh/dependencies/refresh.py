# src/demand_refresh/dependencies/refresh.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Dependency wiring for the refresh pipeline (repositories, gateways, use cases).

Overview:
    Turns a :class:`BootstrapState` into fully constructed components. Nothing
    here is a process-wide singleton: the API lifespan, every CLI command and
    the worker build their own :class:`RefreshServices` and pass it on.

Layer:
    dependencies

Design:
    * SQL repositories share the bootstrap session factory; each operation
      opens its own session.
    * The presence gateway is selected by ``PRESENCE_BACKEND``:
        - ``redis``: :class:`RedisPresenceChannel` (keys expire after two
          heartbeat intervals).
        - ``http``: :class:`HttpPresenceGateway` on the shared HTTP client.
    * The handler table is built lazily by :meth:`RefreshServices.process_batch`
      so that read-only commands run without handler configuration.
    * :func:`build_demand_reporter` connects a viewer-side reporter to the
      enqueuer so the first view of a symbol queues its stale data at once.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import timedelta

import httpx

from demand_refresh.adapters.gateways.http_presence_gateway import HttpPresenceGateway
from demand_refresh.adapters.gateways.redis_presence_channel import RedisPresenceChannel
from demand_refresh.adapters.repositories.job_queue_repository import SqlJobQueueRepository
from demand_refresh.adapters.repositories.subscription_repository import (
    SqlSubscriptionRepository,
)
from demand_refresh.application.services.demand_reporter import DemandReporter
from demand_refresh.application.use_cases.monitoring.check_queue_health import (
    CheckQueueHealthUseCase,
    MonitorThresholds,
)
from demand_refresh.application.use_cases.queue.enqueue_stale_refreshes import (
    EnqueueResult,
    EnqueueStaleRefreshesUseCase,
    RecentCompletionFreshnessCheck,
)
from demand_refresh.application.use_cases.queue.process_batch import ProcessBatchUseCase
from demand_refresh.application.use_cases.queue.reclaim_stuck_jobs import (
    ReclaimStuckJobsUseCase,
)
from demand_refresh.application.use_cases.registry.reconcile_subscriptions import (
    ReconcileSubscriptionsUseCase,
)
from demand_refresh.application.use_cases.registry.sweep_stale_subscriptions import (
    SweepStaleSubscriptionsUseCase,
)
from demand_refresh.config.settings import Settings
from demand_refresh.dependencies.core.bootstrap import BootstrapState
from demand_refresh.dependencies.handlers import build_handler_table
from demand_refresh.domain.interfaces.gateways.presence_gateway import (
    PresenceChannel,
    PresenceGateway,
)
from demand_refresh.domain.interfaces.handlers.job_handler import JobHandler
from demand_refresh.domain.interfaces.repositories.job_queue_repository import (
    JobQueueRepository,
)
from demand_refresh.domain.interfaces.repositories.subscription_repository import (
    SubscriptionRepository,
)
from demand_refresh.domain.services.backoff import BackoffSchedule
from demand_refresh.domain.services.data_type_catalog import (
    DEFAULT_POLICIES,
    GENERIC_DATA_TYPE,
    DataTypeCatalog,
)
from demand_refresh.domain.services.quota import QuotaPolicy
from demand_refresh.infrastructure.redis.redis_client import RedisClient


def build_catalog(settings: Settings) -> DataTypeCatalog:
    """Default catalog with the generic entry's ``max_retries`` taken from settings."""
    policies = [
        dataclasses.replace(p, max_retries=settings.default_max_retries)
        if p.data_type == GENERIC_DATA_TYPE
        else p
        for p in DEFAULT_POLICIES
    ]
    return DataTypeCatalog(policies)


def build_quota(settings: Settings) -> QuotaPolicy:
    return QuotaPolicy(
        quota_bytes=settings.quota_bytes,
        window=timedelta(days=settings.quota_window_days),
        alert_threshold=settings.quota_usage_threshold,
        safety_buffer=settings.quota_safety_buffer,
    )


def build_presence_gateway(
    settings: Settings, *, redis: RedisClient, http: httpx.AsyncClient
) -> PresenceGateway:
    """Return the snapshot reader selected by ``PRESENCE_BACKEND``."""
    if settings.presence_backend == "http":
        # Settings validation guarantees the URL for the http backend.
        return HttpPresenceGateway(
            str(settings.presence_snapshot_url),
            api_key=settings.presence_api_key,
            http=http,
            timeout_s=settings.presence_timeout_s,
        )
    return build_presence_channel(settings, redis=redis)


def build_presence_channel(settings: Settings, *, redis: RedisClient) -> RedisPresenceChannel:
    return RedisPresenceChannel(
        redis,
        namespace=settings.presence_namespace,
        ttl_s=2 * settings.heartbeat_interval_s,
    )


@dataclass
class RefreshServices:
    """Everything a process needs to run the refresh pipeline."""

    settings: Settings
    subscriptions: SubscriptionRepository
    jobs: JobQueueRepository
    presence: PresenceGateway
    catalog: DataTypeCatalog
    quota: QuotaPolicy
    http: httpx.AsyncClient | None = None
    handlers: dict[str, JobHandler] | None = field(default=None)

    def reconcile(self) -> ReconcileSubscriptionsUseCase:
        return ReconcileSubscriptionsUseCase(
            presence=self.presence, subscriptions=self.subscriptions
        )

    def sweep(self) -> SweepStaleSubscriptionsUseCase:
        return SweepStaleSubscriptionsUseCase(
            subscriptions=self.subscriptions,
            staleness_threshold=self.settings.staleness_threshold,
            jobs=self.jobs,
            job_retention=timedelta(days=self.settings.job_retention_days),
        )

    def reclaim(self) -> ReclaimStuckJobsUseCase:
        return ReclaimStuckJobsUseCase(jobs=self.jobs, lease_timeout=self.settings.lease_timeout)

    def enqueue_stale(self) -> EnqueueStaleRefreshesUseCase:
        return EnqueueStaleRefreshesUseCase(
            subscriptions=self.subscriptions,
            jobs=self.jobs,
            freshness=RecentCompletionFreshnessCheck(jobs=self.jobs, catalog=self.catalog),
            catalog=self.catalog,
        )

    def monitor(self) -> CheckQueueHealthUseCase:
        return CheckQueueHealthUseCase(
            jobs=self.jobs,
            quota=self.quota,
            thresholds=MonitorThresholds(
                success_rate=self.settings.success_rate_threshold,
                success_window=timedelta(minutes=self.settings.success_rate_window_minutes),
                stuck_jobs=self.settings.stuck_jobs_threshold,
                lease_timeout=self.settings.lease_timeout,
            ),
        )

    def process_batch(self) -> ProcessBatchUseCase:
        """Build the processor; the handler table is loaded on first use."""
        if self.handlers is None:
            self.handlers = build_handler_table(
                self.settings, catalog=self.catalog, http=self.http
            )
        return ProcessBatchUseCase(
            jobs=self.jobs,
            handlers=self.handlers,
            batch_size=self.settings.batch_size,
            max_priority=self.settings.max_priority,
            worker_id=self.settings.resolved_worker_id(),
            concurrency=self.settings.processing_concurrency,
            invocation_timeout=timedelta(seconds=self.settings.invocation_timeout_s),
            quota=self.quota,
        )


def build_services(state: BootstrapState) -> RefreshServices:
    """Wire SQL repositories and the configured presence gateway."""
    settings = state.settings
    backoff = BackoffSchedule(
        base_s=settings.retry_backoff_base_s, cap_s=settings.retry_backoff_cap_s
    )
    return RefreshServices(
        settings=settings,
        subscriptions=SqlSubscriptionRepository(state.session_factory),
        jobs=SqlJobQueueRepository(state.session_factory, backoff=backoff),
        presence=build_presence_gateway(settings, redis=state.redis, http=state.http_client),
        catalog=build_catalog(settings),
        quota=build_quota(settings),
        http=state.http_client,
    )


def build_demand_reporter(
    services: RefreshServices,
    *,
    channel: PresenceChannel,
    consumer_id: str,
    user_id: str,
) -> DemandReporter:
    """Return a reporter whose first view of a symbol enqueues its stale data.

    New demand goes through :meth:`EnqueueStaleRefreshesUseCase.enqueue_for`,
    so data that is still fresh or already queued is not enqueued again.
    """
    enqueuer = services.enqueue_stale()

    async def _enqueue_new_demand(symbol: str, data_types: frozenset[str]) -> EnqueueResult:
        return await enqueuer.enqueue_for(symbol, sorted(data_types))

    return DemandReporter(
        channel=channel,
        consumer_id=consumer_id,
        user_id=user_id,
        heartbeat_interval_s=services.settings.heartbeat_interval_s,
        on_new_demand=_enqueue_new_demand,
    )
