# src/demand_refresh/domain/enums/job.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Queue job enumerations.

Layer:
    domain/enums
"""

from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle status of a refresh job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Return True for statuses a job never leaves."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobOutcome(str, Enum):
    """How a processor invocation resolved one claimed job."""

    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"
    RESET = "reset"
    ABANDONED = "abandoned"
