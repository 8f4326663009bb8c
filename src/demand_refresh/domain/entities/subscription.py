# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Subscription Entity

Purpose:
    Durable record that a viewer (user) has active demand for one data type of
    one symbol. Rows are created on first observed demand, kept alive by
    reconciliation and removed when demand disappears or goes stale.

Layer: domain/entities
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from .base import BaseEntity


@dataclass(frozen=True, slots=True)
class Subscription(BaseEntity):
    """Registry row keyed by ``(user_id, symbol, data_type)``.

    Args:
        user_id: Identifier of the viewer owning the demand.
        symbol: Upper-case entity symbol (e.g. ``"AAPL"``).
        data_type: Data kind the viewer needs (e.g. ``"quote"``).
        subscribed_at: First time the demand was observed (UTC).
        last_seen_at: Most recent observation (UTC), never before ``subscribed_at``.

    Raises:
        ValueError: If the key is incomplete or the timestamps are inverted.
    """

    user_id: str
    symbol: str
    data_type: str
    subscribed_at: datetime
    last_seen_at: datetime

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("user_id must be non-empty")
        if not self.symbol or self.symbol != self.symbol.upper():
            raise ValueError("symbol must be upper-case non-empty")
        if not self.data_type:
            raise ValueError("data_type must be non-empty")
        if self.subscribed_at.tzinfo is None:
            object.__setattr__(self, "subscribed_at", self.subscribed_at.replace(tzinfo=UTC))
        if self.last_seen_at.tzinfo is None:
            object.__setattr__(self, "last_seen_at", self.last_seen_at.replace(tzinfo=UTC))
        if self.last_seen_at < self.subscribed_at:
            raise ValueError("last_seen_at must be >= subscribed_at")

    @property
    def key(self) -> tuple[str, str, str]:
        """Registry key of this row."""
        return (self.user_id, self.symbol, self.data_type)
