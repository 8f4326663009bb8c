# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Retry Backoff Schedule

Purpose:
    Bounded exponential delay applied to a failed job before it becomes
    claimable again. Pure value object; repositories use it to compute
    ``next_attempt_at``.

Layer: domain/services
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True, slots=True)
class BackoffSchedule:
    """Exponential backoff ``base * 2**retry_count`` capped at ``cap_s``."""

    base_s: float = 5.0
    cap_s: float = 300.0

    def __post_init__(self) -> None:
        if self.base_s < 0 or self.cap_s < 0:
            raise ValueError("backoff values must be >= 0")
        if self.cap_s < self.base_s:
            raise ValueError("cap_s must be >= base_s")

    def delay_for(self, retry_count: int) -> timedelta:
        """Delay before the attempt following ``retry_count`` prior failures.

        Args:
            retry_count: Retry counter *after* the failure is recorded (>= 1).

        Returns:
            Delay as a timedelta, never above ``cap_s``.
        """
        exponent = max(retry_count - 1, 0)
        # Cap the exponent so huge retry counts do not overflow float math.
        seconds = min(self.cap_s, self.base_s * (2 ** min(exponent, 32)))
        return timedelta(seconds=seconds)


NO_BACKOFF = BackoffSchedule(base_s=0.0, cap_s=0.0)
