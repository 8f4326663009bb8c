# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Async SQLAlchemy engine/session factory.

This module owns the process-global async SQLAlchemy engine and
`async_sessionmaker` used by the queue and registry repositories.

Lifecycle:
    * Call `init_engine_and_sessionmaker(settings)` at startup (API lifespan,
      CLI command, worker).
    * Repositories receive `get_sessionmaker()` and open one session per
      operation; an `AsyncSession` is never shared between concurrent tasks.
    * Call `dispose_engine()` during shutdown.

Notes:
    * `pool_pre_ping=True` helps surface dead connections before use.
    * `get_db_session()` lazily initializes from `get_settings()` for callers
      that skip the lifespan (health checks under test transports).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

from sqlalchemy.exc import IllegalStateChangeError, InvalidRequestError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from demand_refresh.config.settings import Settings, get_settings

_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def init_engine_and_sessionmaker(settings: Settings) -> async_sessionmaker[AsyncSession]:
    """Initialize the global async engine and sessionmaker (idempotent).

    Args:
        settings: Application settings providing `database_url`.

    Returns:
        The global session factory.

    Raises:
        ValueError: If `database_url` is empty.
    """
    global _engine, _sessionmaker

    if not settings.database_url:
        raise ValueError("database_url must be configured")
    if _engine is None or _sessionmaker is None:
        _engine = create_async_engine(
            url=settings.database_url,
            pool_pre_ping=True,
            echo=False,
        )
        _sessionmaker = async_sessionmaker(
            bind=_engine, expire_on_commit=False, class_=AsyncSession
        )
    return _sessionmaker


async def dispose_engine() -> None:
    """Dispose the global engine at shutdown."""
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Return the initialized async sessionmaker.

    Raises:
        RuntimeError: If the sessionmaker is not yet initialized.
    """
    if _sessionmaker is None:
        raise RuntimeError("DB sessionmaker not initialized (call init_engine_and_sessionmaker)")
    return _sessionmaker


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a new `AsyncSession`, rolling back any open transaction on exit."""
    if _sessionmaker is None:
        init_engine_and_sessionmaker(get_settings())

    session = get_sessionmaker()()
    try:
        yield session
    finally:
        try:
            tx = session.get_transaction()
            if tx and tx.is_active:
                await session.rollback()
        except InvalidRequestError:
            # Session was still provisioning a connection.
            pass

        with suppress(InvalidRequestError, IllegalStateChangeError):
            await session.close()
