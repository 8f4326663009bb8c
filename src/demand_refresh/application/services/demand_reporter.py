# src/demand_refresh/application/services/demand_reporter.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Demand Reporter (Application Service)

Purpose:
    Runs inside one viewer process and tells the broadcast what that viewer
    currently needs. Views register the data types they display for a symbol;
    the reporter folds them into one need-set per symbol.

Behavior:
    * Every heartbeat announces the *full* union of data types per symbol on
      ``entity:<SYMBOL>``, never a delta. A missed heartbeat is repaired by
      the next one.
    * A symbol that no view needs any more is withdrawn on the next
      heartbeat. Withdrawal only shortens latency; reconciliation and the
      staleness sweep stay authoritative.
    * ``stop()`` withdraws every announced topic best-effort and never raises.
    * The first view of a symbol can trigger ``on_new_demand`` so a refresh
      is enqueued without waiting for the next enqueue pass.

Layer: application/services
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Collection, Mapping

from demand_refresh.domain.interfaces.gateways.presence_gateway import PresenceChannel
from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.scheduling.periodic import PeriodicTask

logger = get_json_logger(__name__)

NewDemandCallback = Callable[[str, frozenset[str]], Awaitable[object]]


class DemandReporter:
    """Aggregate per-view needs and heartbeat them onto the presence channel."""

    def __init__(
        self,
        *,
        channel: PresenceChannel,
        consumer_id: str,
        user_id: str,
        heartbeat_interval_s: float = 60.0,
        on_new_demand: NewDemandCallback | None = None,
    ) -> None:
        if not consumer_id:
            raise ValueError("consumer_id is required")
        if not user_id:
            raise ValueError("user_id is required")
        self._channel = channel
        self._consumer_id = consumer_id
        self._user_id = user_id
        self._on_new_demand = on_new_demand
        self._views: dict[str, tuple[str, frozenset[str]]] = {}
        self._announced: set[str] = set()
        self._lock = asyncio.Lock()
        self._heartbeat = PeriodicTask(
            f"reporter:{consumer_id}", self.heartbeat, heartbeat_interval_s
        )

    @property
    def running(self) -> bool:
        return self._heartbeat.running

    @property
    def announced_symbols(self) -> frozenset[str]:
        return frozenset(self._announced)

    def need_set(self) -> dict[str, frozenset[str]]:
        """Return ``symbol -> union of data types`` across all registered views."""
        return need_set_from_views(self._views)

    async def add_view(self, view_id: str, symbol: str, data_types: Collection[str]) -> None:
        """Register (or replace) what one view displays."""
        normalized = symbol.strip().upper()
        types = frozenset(d for d in data_types if d)
        before = self.need_set().get(normalized, frozenset())
        self._views[view_id] = (normalized, types)
        added = types - before
        if added and self._on_new_demand is not None:
            try:
                await self._on_new_demand(normalized, frozenset(added))
            except Exception:
                logger.exception(
                    "reporter.new_demand_failed",
                    extra={"extra": {"symbol": normalized, "data_types": sorted(added)}},
                )

    def remove_view(self, view_id: str) -> None:
        """Forget a view; its symbol is withdrawn on the next heartbeat if unused."""
        self._views.pop(view_id, None)

    async def heartbeat(self) -> None:
        """Announce the full need-set and withdraw topics that are no longer needed."""
        async with self._lock:
            needs = self.need_set()
            for symbol, data_types in sorted(needs.items()):
                await self._channel.announce(
                    self._consumer_id, self._user_id, symbol, sorted(data_types)
                )
                self._announced.add(symbol)
            dropped = self._announced - needs.keys()
            for symbol in sorted(dropped):
                await self._channel.withdraw(self._consumer_id, symbol)
                self._announced.discard(symbol)
        logger.debug(
            "reporter.heartbeat",
            extra={
                "extra": {
                    "consumer_id": self._consumer_id,
                    "symbols": len(needs),
                    "withdrawn": len(dropped),
                }
            },
        )

    def start(self) -> None:
        """Start heart-beating; the first announce happens immediately."""
        self._heartbeat.start()

    async def stop(self) -> None:
        """Stop heart-beating and withdraw every announced topic (best effort)."""
        await self._heartbeat.stop()
        async with self._lock:
            for symbol in sorted(self._announced):
                try:
                    await self._channel.withdraw(self._consumer_id, symbol)
                except Exception:
                    logger.warning(
                        "reporter.withdraw_failed",
                        extra={"extra": {"consumer_id": self._consumer_id, "symbol": symbol}},
                        exc_info=True,
                    )
            self._announced.clear()
        logger.info("reporter.stopped", extra={"extra": {"consumer_id": self._consumer_id}})


def need_set_from_views(
    views: Mapping[str, tuple[str, Collection[str]]],
) -> dict[str, frozenset[str]]:
    """Union data types per symbol for a ``view_id -> (symbol, data_types)`` mapping."""
    merged: dict[str, set[str]] = defaultdict(set)
    for symbol, data_types in views.values():
        merged[symbol.strip().upper()].update(d for d in data_types if d)
    return {symbol: frozenset(types) for symbol, types in merged.items() if types}
