# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Refresh Job Entity

Purpose:
    Immutable snapshot of one unit of refresh work for a ``(symbol, data_type)``
    pair as stored in the priority queue.

Layer: domain/entities

Notes:
    Lower ``priority`` values are more urgent. ``next_attempt_at`` delays a
    retried job; ``claimed_at``/``claimed_by`` describe the current lease while
    the job is ``processing``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from demand_refresh.domain.enums.job import JobStatus

from .base import BaseEntity


@dataclass(frozen=True, slots=True)
class RefreshJob(BaseEntity):
    """Refresh job row.

    Raises:
        ValueError: If retry counters or sizes are negative, or a non-terminal
            job carries ``retry_count > max_retries``.
    """

    id: UUID
    symbol: str
    data_type: str
    status: JobStatus
    priority: int
    retry_count: int
    max_retries: int
    created_at: datetime
    estimated_data_size_bytes: int = 0
    job_metadata: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None
    actual_data_size_bytes: int | None = None
    error_message: str | None = None
    error_code: str | None = None
    claimed_at: datetime | None = None
    claimed_by: str | None = None
    processed_at: datetime | None = None
    next_attempt_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.retry_count < 0 or self.max_retries < 0:
            raise ValueError("retry_count and max_retries must be >= 0")
        if not self.status.is_terminal and self.retry_count > self.max_retries:
            raise ValueError("retry_count must be <= max_retries while the job is active")
        if self.estimated_data_size_bytes < 0:
            raise ValueError("estimated_data_size_bytes must be >= 0")

    @property
    def can_retry(self) -> bool:
        """True when a handler failure would re-queue rather than fail terminally."""
        return self.retry_count < self.max_retries
