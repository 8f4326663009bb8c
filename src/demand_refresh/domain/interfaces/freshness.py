# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Freshness policy contract used by the job enqueuer."""

from __future__ import annotations

from typing import Protocol


class FreshnessCheck(Protocol):
    """Decides whether stored data for a pair needs a refresh."""

    async def is_stale(self, symbol: str, data_type: str) -> bool:
        raise NotImplementedError
