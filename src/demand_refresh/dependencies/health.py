# src/demand_refresh/dependencies/health.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Readiness check backed by the live DB engine and Redis client."""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.redis.redis_client import RedisClient

logger = get_json_logger(__name__)


class InfraHealthCheck:
    """``SELECT 1`` against the database and ``PING`` against Redis."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        redis: RedisClient,
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis

    async def db(self) -> tuple[bool, str | None]:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:  # noqa: BLE001
            logger.warning("readiness.db_down", extra={"extra": {"error": type(exc).__name__}})
            return False, type(exc).__name__
        return True, None

    async def redis(self) -> tuple[bool, str | None]:
        try:
            await self._redis.ping()
        except Exception as exc:  # noqa: BLE001
            logger.warning("readiness.redis_down", extra={"extra": {"error": type(exc).__name__}})
            return False, type(exc).__name__
        return True, None
