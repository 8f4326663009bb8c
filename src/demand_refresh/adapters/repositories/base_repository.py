# src/demand_refresh/adapters/repositories/base_repository.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
BaseRepository: shared foundation for the SQLAlchemy repositories.

Purpose:
    Shared mechanics for the registry and queue repositories:
      * One session and one transaction per repository operation.
      * An injectable UTC clock for timestamp columns.

Layer: adapters / repositories

Notes:
    * No business logic, no domain decisions.
    * Repositories are called from concurrently running tasks (processor
      jobs, periodic loops), and an ``AsyncSession`` must not be shared
      between tasks. They therefore hold a session *factory* and commit
      each operation on its own.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import Select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from demand_refresh.domain.services.clock import Clock, system_clock

TModel = TypeVar("TModel")


class BaseRepository(Generic[TModel]):  # noqa: UP046
    """Base class for SQLAlchemy repositories."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the repository.

        Args:
            session_factory: Async sessionmaker bound to the target database.
            clock: Optional UTC clock (tests pin time with it).
        """
        self._session_factory = session_factory
        self._clock: Clock = clock or system_clock

    def utc_now(self) -> datetime:
        """Return the repository clock's current UTC time."""
        return self._clock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside a transaction that commits on success."""
        async with self._session_factory() as session, session.begin():
            yield session

    @staticmethod
    async def fetch_all(session: AsyncSession, stmt: Select[Any]) -> list[Any]:
        """Execute a statement and return all scalar rows as a list."""
        res = await session.execute(stmt)
        return list(res.scalars().all())
