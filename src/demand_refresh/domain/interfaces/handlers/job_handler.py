# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Job handler contract.

A handler refreshes one data type for one symbol (calls the provider and
writes storage). The batch processor dispatches through an explicit
``Mapping[str, JobHandler]`` keyed by data type.

Handlers signal outcomes by raising:

* TransientContentionError (or a database deadlock): retry without penalty.
* StaleDataRejectedError: storage refused an older write.
* anything else: a failed attempt.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a successful refresh."""

    data_size_bytes: int = 0


class JobHandler(Protocol):
    """Refreshes one data type."""

    async def handle(self, symbol: str, job_metadata: Mapping[str, Any]) -> HandlerResult:
        raise NotImplementedError
