# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Database error classification.

Recognizes lock contention and serialization failures raised by the driver,
whether they arrive raw (asyncpg), wrapped by SQLAlchemy (``DBAPIError.orig``)
or chained through ``__cause__`` by a handler.

SQLSTATE codes treated as contention:
    * ``40P01`` deadlock_detected
    * ``40001`` serialization_failure
    * ``55P03`` lock_not_available
"""

from __future__ import annotations

CONTENTION_SQLSTATES: frozenset[str] = frozenset({"40P01", "40001", "55P03"})
_CONTENTION_MARKERS = ("deadlock detected", "could not serialize access")
_MAX_CHAIN_DEPTH = 8


def _sqlstate(exc: BaseException) -> str | None:
    for attr in ("sqlstate", "pgcode", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, str) and len(value) == 5:
            return value.upper()
    return None


def is_contention_error(exc: BaseException) -> bool:
    """Return True when ``exc`` (or anything it wraps) is DB lock contention.

    Args:
        exc: Exception raised by a handler or repository.

    Returns:
        bool: True for deadlocks, serialization failures and lock timeouts.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    depth = 0
    while current is not None and id(current) not in seen and depth < _MAX_CHAIN_DEPTH:
        seen.add(id(current))
        if _sqlstate(current) in CONTENTION_SQLSTATES:
            return True
        message = str(current).lower()
        if any(marker in message for marker in _CONTENTION_MARKERS):
            return True
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException) and id(orig) not in seen:
            current = orig
        else:
            current = current.__cause__ or current.__context__
        depth += 1
    return False
