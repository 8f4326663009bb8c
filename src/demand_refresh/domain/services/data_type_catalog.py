# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Data Type Catalog

Purpose:
    Per-data-type refresh policy: how long stored data stays fresh, how urgent
    its jobs are, how many handler failures are tolerated and how large the
    payload usually is. Unknown data types fall back to a generic entry.

Layer: domain/services
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from types import MappingProxyType


@dataclass(frozen=True, slots=True)
class DataTypePolicy:
    """Refresh policy for one data type."""

    data_type: str
    ttl: timedelta
    priority: int
    max_retries: int
    estimated_size_bytes: int

    def __post_init__(self) -> None:
        if self.ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        if self.priority < 0 or self.max_retries < 0 or self.estimated_size_bytes < 0:
            raise ValueError("priority, max_retries and estimated_size_bytes must be >= 0")


GENERIC_DATA_TYPE = "*"

DEFAULT_POLICIES: tuple[DataTypePolicy, ...] = (
    DataTypePolicy(
        "quote",
        timedelta(minutes=1),
        priority=10,
        max_retries=3,
        estimated_size_bytes=1_024,
    ),
    DataTypePolicy(
        "profile",
        timedelta(hours=24),
        priority=50,
        max_retries=3,
        estimated_size_bytes=4_096,
    ),
    DataTypePolicy(
        "financial-statements",
        timedelta(hours=24),
        priority=100,
        max_retries=3,
        estimated_size_bytes=150 * 1_024,
    ),
    DataTypePolicy(
        GENERIC_DATA_TYPE,
        timedelta(hours=1),
        priority=100,
        max_retries=3,
        estimated_size_bytes=2_048,
    ),
)


class DataTypeCatalog:
    """Immutable lookup of :class:`DataTypePolicy` by data type."""

    def __init__(self, policies: Iterable[DataTypePolicy] = DEFAULT_POLICIES) -> None:
        table = {p.data_type: p for p in policies}
        if GENERIC_DATA_TYPE not in table:
            raise ValueError("catalog requires a generic '*' policy")
        self._policies: Mapping[str, DataTypePolicy] = MappingProxyType(table)

    def policy_for(self, data_type: str) -> DataTypePolicy:
        """Return the policy for ``data_type`` or the generic fallback."""
        return self._policies.get(data_type) or self._policies[GENERIC_DATA_TYPE]

    def is_known(self, data_type: str) -> bool:
        return data_type != GENERIC_DATA_TYPE and data_type in self._policies

    @property
    def data_types(self) -> tuple[str, ...]:
        return tuple(sorted(k for k in self._policies if k != GENERIC_DATA_TYPE))
