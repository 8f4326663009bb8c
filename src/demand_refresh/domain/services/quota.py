# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Data Transfer Quota Policy

Purpose:
    Relates bytes refreshed inside a trailing window to a fixed budget. The
    monitor alerts above ``alert_threshold``; the batch processor stops
    claiming once usage reaches ``1 - safety_buffer``.

Layer: domain/services
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True, slots=True)
class QuotaPolicy:
    """Quota budget and thresholds."""

    quota_bytes: int
    window: timedelta = timedelta(days=30)
    alert_threshold: float = 0.80
    safety_buffer: float = 0.05

    def __post_init__(self) -> None:
        if self.quota_bytes <= 0:
            raise ValueError("quota_bytes must be > 0")
        if not 0.0 < self.alert_threshold <= 1.0:
            raise ValueError("alert_threshold must be in (0, 1]")
        if not 0.0 <= self.safety_buffer < 1.0:
            raise ValueError("safety_buffer must be in [0, 1)")

    def usage_ratio(self, used_bytes: int) -> float:
        return max(used_bytes, 0) / self.quota_bytes

    def is_exhausted(self, used_bytes: int) -> bool:
        """True once usage reaches ``1 - safety_buffer`` of the budget."""
        return self.usage_ratio(used_bytes) >= 1.0 - self.safety_buffer
