# src/demand_refresh/adapters/gateways/redis_presence_channel.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Redis-backed presence broadcast.

Purpose:
    Implements both ``PresenceChannel`` (announce/withdraw, used by demand
    reporters) and ``PresenceGateway`` (snapshot, used by reconciliation).

Layout:
    One string key per consumer and topic::

        {namespace}:entity:{SYMBOL}:{consumer_id} -> JSON presence entry

    Each announce rewrites the key with ``EX ttl_s``. A consumer that stops
    heart-beating disappears from the snapshot once its key expires, even if
    it never withdrew.

Notes:
    Any Redis error while building a snapshot raises
    ``PresenceUnreachableError`` so that reconciliation never mistakes an
    outage for "nobody is watching".
"""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Collection
from datetime import UTC, datetime

from redis.exceptions import RedisError

from demand_refresh.adapters.gateways.presence_payload import (
    encode_presence_state,
    parse_presence_state,
)
from demand_refresh.domain.entities.presence import (
    TOPIC_PREFIX,
    PresenceSnapshot,
    PresenceState,
    PresenceTopic,
    topic_for,
)
from demand_refresh.domain.exceptions.presence import PresenceUnreachableError
from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.redis.redis_client import RedisClient

logger = get_json_logger(__name__)

_MGET_CHUNK = 500


class RedisPresenceChannel:
    """Presence broadcast stored as expiring Redis keys."""

    def __init__(
        self,
        redis: RedisClient,
        *,
        namespace: str = "demand_refresh:presence",
        ttl_s: int = 120,
    ) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        self._redis = redis
        self._ns = namespace.rstrip(":")
        self._ttl_s = int(ttl_s)

    def key_for(self, symbol: str, consumer_id: str) -> str:
        """Return the Redis key of one consumer's presence on a symbol topic."""
        return f"{self._ns}:{topic_for(symbol)}:{consumer_id}"

    # ------------------------------------------------------------------
    # PresenceChannel
    # ------------------------------------------------------------------

    async def announce(
        self,
        consumer_id: str,
        user_id: str,
        symbol: str,
        data_types: Collection[str],
    ) -> None:
        state = PresenceState(
            consumer_id=consumer_id,
            user_id=user_id,
            data_types=tuple(sorted(set(data_types))),
            subscribed_at=datetime.now(UTC),
        )
        await self._redis.set(
            self.key_for(symbol, consumer_id),
            json.dumps(encode_presence_state(state), separators=(",", ":")),
            ex=self._ttl_s,
        )

    async def withdraw(self, consumer_id: str, symbol: str) -> None:
        await self._redis.delete(self.key_for(symbol, consumer_id))

    # ------------------------------------------------------------------
    # PresenceGateway
    # ------------------------------------------------------------------

    async def fetch_snapshot(self) -> PresenceSnapshot:
        prefix = f"{self._ns}:{TOPIC_PREFIX}"
        try:
            keys = [k async for k in self._redis.scan_iter(match=f"{prefix}*", count=500)]
            values: list[str | None] = []
            for start in range(0, len(keys), _MGET_CHUNK):
                values.extend(await self._redis.mget(keys[start : start + _MGET_CHUNK]))
        except RedisError as exc:
            raise PresenceUnreachableError(
                "presence store unreachable", details={"error": type(exc).__name__}
            ) from exc

        by_topic: dict[str, list[PresenceState]] = defaultdict(list)
        for key, raw in zip(keys, values, strict=True):
            if raw is None:
                # Expired between SCAN and MGET.
                continue
            key_str = key.decode() if isinstance(key, bytes) else str(key)
            symbol, sep, consumer_id = key_str[len(prefix) :].partition(":")
            if not sep or not symbol or not consumer_id:
                continue
            try:
                decoded = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning(
                    "presence.malformed_entry",
                    extra={"extra": {"key": key_str}},
                )
                continue
            state = parse_presence_state(consumer_id, decoded)
            if state is not None:
                by_topic[topic_for(symbol)].append(state)

        return PresenceSnapshot(
            topics=tuple(
                PresenceTopic(topic=topic, presences=tuple(states))
                for topic, states in sorted(by_topic.items())
            )
        )
