# src/demand_refresh/infrastructure/redis/redis_client.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Async Redis client factory for the presence channel and readiness check."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import suppress
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias, cast, runtime_checkable

import redis.asyncio as aioredis

if TYPE_CHECKING:
    from redis.asyncio.client import Redis as _RedisGeneric

    AioredisRedis: TypeAlias = _RedisGeneric[str]
else:
    from redis.asyncio.client import Redis as AioredisRedis  # type: ignore[assignment]

from demand_refresh.config.settings import Settings, get_settings

__all__ = [
    "RedisClient",
    "init_redis",
    "close_redis",
    "get_redis_client",
]


@runtime_checkable
class RedisClient(Protocol):
    """Subset of the redis.asyncio API used by this service."""

    async def ping(self) -> Any: ...
    async def aclose(self) -> None: ...

    async def set(self, key: str, value: Any, *, ex: int | None = None) -> Any: ...
    async def delete(self, *keys: str) -> Any: ...
    async def mget(self, keys: list[str]) -> list[Any]: ...
    def scan_iter(self, match: str | None = None, count: int | None = None) -> AsyncIterator[Any]: ...


_client: RedisClient | None = None


def _create_aioredis_client(url: str, socket_timeout: float) -> AioredisRedis:
    """Build the concrete asyncio Redis client from URL."""
    _from_url: Any = aioredis.from_url
    client = _from_url(
        url=url,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=15,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )
    return cast(AioredisRedis, client)


def init_redis(settings: Settings) -> RedisClient:
    """Initialize the global async Redis client (idempotent)."""
    global _client
    if _client is None:
        _client = cast(
            RedisClient,
            _create_aioredis_client(str(settings.redis_url), settings.redis_socket_timeout_s),
        )
    return _client


async def close_redis() -> None:
    """Close the global Redis client at shutdown."""
    global _client
    if _client is not None:
        with suppress(RuntimeError):
            await _client.aclose()
        _client = None


def get_redis_client() -> RedisClient:
    """Return the initialized Redis client (lazy-inits when lifespan was skipped)."""
    if _client is None:
        return init_redis(get_settings())
    return _client
