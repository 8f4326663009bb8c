# src/demand_refresh/adapters/gateways/presence_payload.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Wire mapping for presence payloads.

Snapshot wire shape (a list of topics, or an object with a ``topics`` list)::

    [{"topic": "entity:AAPL",
      "presence": {"<consumer_id>": {"userId": "u1",
                                     "dataTypes": ["quote", "profile"],
                                     "subscribedAt": "2025-01-01T00:00:00Z"}}}]

A presence value may also be a list of such entries (one per connection of
the same consumer); their data types are merged.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from demand_refresh.domain.entities.presence import PresenceSnapshot, PresenceState, PresenceTopic
from demand_refresh.domain.exceptions.presence import PresenceUnreachableError


def _parse_ts(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=UTC)


def parse_presence_state(consumer_id: str, raw: Any) -> PresenceState | None:
    """Map one presence entry (or list of entries) to :class:`PresenceState`.

    Returns:
        The state, or ``None`` when the entry carries no user id.
    """
    entries = raw if isinstance(raw, list) else [raw]
    user_id: str | None = None
    data_types: list[str] = []
    subscribed_at: datetime | None = None
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        uid = entry.get("userId") or entry.get("user_id")
        if isinstance(uid, str) and uid:
            user_id = user_id or uid
        types = entry.get("dataTypes") or entry.get("data_types") or []
        if isinstance(types, Sequence) and not isinstance(types, str):
            data_types.extend(t for t in types if isinstance(t, str) and t and t not in data_types)
        ts = _parse_ts(entry.get("subscribedAt") or entry.get("subscribed_at"))
        if ts is not None and (subscribed_at is None or ts < subscribed_at):
            subscribed_at = ts
    if user_id is None:
        return None
    return PresenceState(
        consumer_id=consumer_id,
        user_id=user_id,
        data_types=tuple(data_types),
        subscribed_at=subscribed_at,
    )


def parse_snapshot(payload: Any) -> PresenceSnapshot:
    """Map a decoded JSON snapshot to :class:`PresenceSnapshot`.

    Raises:
        PresenceUnreachableError: If the payload shape is not recognized.
    """
    if isinstance(payload, Mapping):
        payload = payload.get("topics")
    if not isinstance(payload, list):
        raise PresenceUnreachableError(
            "presence snapshot has an unexpected shape",
            details={"expected": "list[topic] or {topics: list[topic]}"},
        )

    topics: list[PresenceTopic] = []
    for item in payload:
        if not isinstance(item, Mapping) or not isinstance(item.get("topic"), str):
            raise PresenceUnreachableError(
                "presence snapshot topic is malformed", details={"item": repr(item)[:200]}
            )
        presence = item.get("presence") or {}
        if not isinstance(presence, Mapping):
            raise PresenceUnreachableError(
                "presence map is malformed", details={"topic": item["topic"]}
            )
        states = tuple(
            state
            for consumer_id, raw in presence.items()
            if (state := parse_presence_state(str(consumer_id), raw)) is not None
        )
        topics.append(PresenceTopic(topic=item["topic"], presences=states))
    return PresenceSnapshot(topics=tuple(topics))


def encode_presence_state(state: PresenceState) -> dict[str, Any]:
    """Return the wire form of one presence entry."""
    return {
        "userId": state.user_id,
        "dataTypes": list(state.data_types),
        "subscribedAt": state.subscribed_at.isoformat() if state.subscribed_at else None,
    }
