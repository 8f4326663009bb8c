# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Presence Snapshot Types

Purpose:
    Value objects describing what viewers announced on the presence broadcast.
    A snapshot is a list of topics (``entity:<SYMBOL>``); each topic carries one
    presence entry per connected consumer.

Layer: domain/entities
"""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime

TOPIC_PREFIX = "entity:"


def topic_for(symbol: str) -> str:
    """Return the broadcast topic name for a symbol."""
    return f"{TOPIC_PREFIX}{symbol.upper()}"


def symbol_from_topic(topic: str) -> str | None:
    """Extract the symbol from an ``entity:<SYMBOL>`` topic, or ``None``."""
    if not topic.startswith(TOPIC_PREFIX):
        return None
    symbol = topic[len(TOPIC_PREFIX) :].strip().upper()
    return symbol or None


@dataclass(frozen=True, slots=True)
class DemandKey:
    """One unit of demand: a user needing one data type of one symbol."""

    user_id: str
    symbol: str
    data_type: str

    @property
    def pair(self) -> tuple[str, str]:
        """The ``(symbol, data_type)`` projection used by the job queue."""
        return (self.symbol, self.data_type)


@dataclass(frozen=True, slots=True)
class PresenceState:
    """What one consumer announced for a topic."""

    consumer_id: str
    user_id: str
    data_types: tuple[str, ...]
    subscribed_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class PresenceTopic:
    """All presence entries currently published on one topic."""

    topic: str
    presences: tuple[PresenceState, ...] = ()

    @property
    def symbol(self) -> str | None:
        return symbol_from_topic(self.topic)


@dataclass(frozen=True, slots=True)
class PresenceSnapshot:
    """Point-in-time view of the whole presence broadcast."""

    topics: tuple[PresenceTopic, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[PresenceTopic]:
        return iter(self.topics)

    @property
    def is_empty(self) -> bool:
        return not any(t.presences for t in self.topics)
