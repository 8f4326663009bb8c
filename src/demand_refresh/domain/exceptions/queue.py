# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Refresh Queue Exceptions

Purpose:
    Errors raised by job handlers and the queue. The batch processor maps each
    class to a queue operation: contention resets the job, a stale-data
    rejection fails it terminally, everything else counts as a failed attempt.

Layer: domain/exceptions
"""
from __future__ import annotations

from .base import DomainError


class TransientContentionError(DomainError):
    """Handler lost a race on a shared row; the attempt should not count."""

    code = "TRANSIENT_CONTENTION"


class HandlerError(DomainError):
    """A job handler failed to refresh its data."""

    code = "HANDLER_ERROR"


class StaleDataRejectedError(HandlerError):
    """Storage refused a write older than the data it already holds.

    The refresh worked as intended, so the job is never retried.
    """

    code = "STALE_DATA_REJECTED"


class UnsupportedDataTypeError(HandlerError):
    """No handler is registered for the job's data type."""

    code = "UNSUPPORTED_DATA_TYPE"


class JobNotFoundError(DomainError):
    """A queue operation referenced a job id that does not exist."""

    code = "JOB_NOT_FOUND"


class LeaseLostError(DomainError):
    """A resolution targeted a job this worker no longer holds.

    Raised when the job has left ``processing`` (reclaimed, re-claimed or
    already resolved) or is now claimed by another worker. Nothing is written.
    """

    code = "LEASE_LOST"
