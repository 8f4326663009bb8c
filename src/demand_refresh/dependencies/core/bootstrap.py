# src/demand_refresh/dependencies/core/bootstrap.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Core bootstrap for infrastructure (logging, DB, Redis, HTTP).

This module owns the lifecycle of shared infrastructure used by the FastAPI
app, the CLI commands and the worker. Configuration is read from Settings and
the heavy lifting is delegated to the infrastructure modules.

The single public surface is :func:`bootstrap`, an async context manager that
yields a state object with the resolved Settings, the session factory, the
Redis client and a shared HTTP client.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from demand_refresh.config.settings import Settings, get_settings
from demand_refresh.infrastructure.logging.logger import (
    configure_root_logging,
    get_json_logger,
)
from demand_refresh.infrastructure.redis.redis_client import RedisClient

logger = get_json_logger(__name__)


@dataclass
class BootstrapState:
    """State yielded by the bootstrap context manager."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    redis: RedisClient
    http_client: httpx.AsyncClient


@asynccontextmanager
async def bootstrap(settings: Settings | None = None) -> AsyncGenerator[BootstrapState, None]:
    """Initialize and teardown shared infrastructure.

    Responsibilities:
        * Load application settings and configure JSON logging.
        * Initialize DB engine/sessionmaker.
        * Initialize Redis client.
        * Create a shared HTTPX AsyncClient.
        * Ensure all of the above are shut down on exit, even on error.

    Args:
        settings: Explicit settings; defaults to :func:`get_settings`.

    Yields:
        BootstrapState: Resolved settings and shared clients.
    """
    settings = settings or get_settings()
    configure_root_logging(settings.log_level)
    logger.info("bootstrap.start", extra={"extra": {"environment": settings.environment.value}})

    # Import infrastructure modules here so tests can monkeypatch their functions.
    import demand_refresh.infrastructure.database.session as db_session
    import demand_refresh.infrastructure.redis.redis_client as redis_client

    session_factory = db_session.init_engine_and_sessionmaker(settings)
    redis = redis_client.init_redis(settings)
    http_client = httpx.AsyncClient()

    state = BootstrapState(
        settings=settings,
        session_factory=session_factory,
        redis=redis,
        http_client=http_client,
    )

    try:
        yield state
    finally:
        try:
            await http_client.aclose()
        except Exception:
            logger.exception("bootstrap.http_client_close_failed")

        try:
            await redis_client.close_redis()
        except Exception:
            logger.exception("bootstrap.redis_close_failed")

        try:
            await db_session.dispose_engine()
        except Exception:
            logger.exception("bootstrap.db_dispose_failed")

        logger.info("bootstrap.stop")
