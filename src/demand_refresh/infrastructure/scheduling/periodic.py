# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Periodic async task runner.

Runs one coroutine function on a fixed interval inside the current event loop
with an explicit ``start()``/``stop()`` lifecycle. Used by the worker command
for the processor, reconciler, sweeper, reclaimer and enqueuer loops, and by
the demand reporter for its heartbeat.

Behavior:
    * The first run happens immediately after ``start()`` unless
      ``run_immediately=False``.
    * An exception in one run is logged and counted; the loop keeps going.
    * ``stop()`` wakes the loop, lets an in-flight run finish within
      ``stop_timeout`` and cancels it otherwise. It is safe to call twice.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

from demand_refresh.infrastructure.logging.logger import get_json_logger

logger = get_json_logger(__name__)


class PeriodicTask:
    """Run ``func`` every ``interval_s`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_s: float,
        *,
        run_immediately: bool = True,
        stop_timeout: float = 30.0,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.name = name
        self._func = func
        self._interval_s = float(interval_s)
        self._run_immediately = run_immediately
        self._stop_timeout = stop_timeout
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop (idempotent)."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(
            "periodic.started",
            extra={"extra": {"task": self.name, "interval_s": self._interval_s}},
        )

    async def stop(self) -> None:
        """Stop the loop and wait for it to exit."""
        task = self._task
        if task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._stop_timeout)
        except TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        finally:
            self._task = None
        logger.info(
            "periodic.stopped",
            extra={"extra": {"task": self.name, "runs": self.runs, "failures": self.failures}},
        )

    async def run_once(self) -> None:
        """Execute one iteration, logging (not raising) any failure."""
        self.runs += 1
        try:
            await self._func()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception(
                "periodic.run_failed",
                extra={"extra": {"task": self.name, "runs": self.runs}},
            )

    async def _loop(self) -> None:
        if not self._run_immediately and await self._wait_interval():
            return
        while not self._stop_event.is_set():
            await self.run_once()
            if await self._wait_interval():
                return

    async def _wait_interval(self) -> bool:
        """Sleep for one interval; return True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_s)
        except TimeoutError:
            return False
        return True
