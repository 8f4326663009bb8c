# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Base Domain Exceptions.

Summary:
    Canonical base class for domain/application exceptions. Each subclass carries
    a stable ``code`` used in logs, stored job errors and HTTP envelopes.

Layer:
    domain/exceptions
"""
from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for all domain/application exceptions."""

    code: str = "DOMAIN_ERROR"

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = details or {}


class ConfigurationError(DomainError):
    """A component cannot run with the configuration it was given."""

    code = "CONFIGURATION_ERROR"
