# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Domain-facing interfaces for the presence broadcast.

Two roles are separated:

* PresenceGateway: read side used by reconciliation to obtain a snapshot.
* PresenceChannel: write side used by demand reporters to publish and
  withdraw their need-set on ``entity:<SYMBOL>`` topics.

A concrete adapter may implement both (the Redis channel does).
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Protocol

from demand_refresh.domain.entities.presence import PresenceSnapshot


class PresenceGateway(Protocol):
    """Reads the current presence snapshot."""

    async def fetch_snapshot(self) -> PresenceSnapshot:
        """Return every topic and its presence entries.

        Returns:
            The snapshot. An empty snapshot means nobody needs anything.

        Raises:
            PresenceUnreachableError: If the snapshot could not be obtained.
        """
        raise NotImplementedError


class PresenceChannel(Protocol):
    """Publishes a consumer's demand on the broadcast."""

    async def announce(
        self,
        consumer_id: str,
        user_id: str,
        symbol: str,
        data_types: Collection[str],
    ) -> None:
        """Publish the full set of data types ``consumer_id`` needs for ``symbol``."""
        raise NotImplementedError

    async def withdraw(self, consumer_id: str, symbol: str) -> None:
        """Remove the consumer's presence from the symbol's topic."""
        raise NotImplementedError
