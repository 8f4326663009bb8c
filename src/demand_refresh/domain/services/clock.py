# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""UTC clock type shared by repositories and use cases (tests pin time with it)."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(UTC)
