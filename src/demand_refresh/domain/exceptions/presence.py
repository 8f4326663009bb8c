# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Presence Exceptions

Layer: domain/exceptions
"""
from __future__ import annotations

from .base import DomainError


class PresenceUnreachableError(DomainError):
    """The presence snapshot could not be fetched or decoded."""

    code = "PRESENCE_UNREACHABLE"
