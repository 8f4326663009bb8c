# src/demand_refresh/dependencies/handlers.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Handler table wiring.

Overview:
    Builds the ``data_type -> JobHandler`` table the batch processor dispatches
    through. Two sources are merged, registered handlers first:

    * Installed packages register handlers as entry points in the
      ``demand_refresh.handlers`` group; the entry point name is the data type::

          [project.entry-points."demand_refresh.handlers"]
          quote = "acme_refresh.handlers:QuoteHandler"

      A class or zero-argument factory is called, anything else is used as
      the handler instance. ``JOB_HANDLERS`` (``"quote,profile"``) narrows
      the table to the listed data types; unset, every registered handler is
      used.
    * ``HANDLER_BASE_URL``: every catalog data type not covered above is served
      by an :class:`HttpJobHandler` posting to ``<base>/<data_type>``.

Layer:
    dependencies
"""

from __future__ import annotations

import inspect
from collections.abc import Iterable
from importlib.metadata import EntryPoint, entry_points
from typing import Any, Final

import httpx

from demand_refresh.adapters.handlers.http_job_handler import HttpJobHandler
from demand_refresh.config.settings import Settings
from demand_refresh.domain.exceptions.base import ConfigurationError
from demand_refresh.domain.interfaces.handlers.job_handler import JobHandler
from demand_refresh.domain.services.data_type_catalog import DataTypeCatalog
from demand_refresh.infrastructure.logging.logger import get_json_logger

logger = get_json_logger(__name__)

HANDLER_ENTRY_POINT_GROUP: Final[str] = "demand_refresh.handlers"


def parse_handler_names(raw: str | None) -> frozenset[str] | None:
    """Parse ``JOB_HANDLERS`` (``"quote, profile"``) into a set of data types.

    Returns:
        ``None`` when unset or blank, meaning "every registered handler".
    """
    if raw is None:
        return None
    names = frozenset(part.strip() for part in raw.split(",") if part.strip())
    return names or None


def registered_handlers(
    registry: Iterable[EntryPoint] | None = None,
) -> dict[str, EntryPoint]:
    """Return the handler entry points keyed by data type.

    Raises:
        ConfigurationError: When two distributions register the same data type.
    """
    if registry is None:
        registry = entry_points(group=HANDLER_ENTRY_POINT_GROUP)
    found: dict[str, EntryPoint] = {}
    for ep in registry:
        if ep.name in found and found[ep.name].value != ep.value:
            raise ConfigurationError(
                "data type registered by more than one handler",
                details={"data_type": ep.name, "values": [found[ep.name].value, ep.value]},
            )
        found[ep.name] = ep
    return found


def load_handler(ep: EntryPoint) -> JobHandler:
    """Load a registered entry point and return a handler instance."""
    details = {"data_type": ep.name, "value": ep.value}
    try:
        obj: Any = ep.load()
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(
            f"cannot load job handler '{ep.name}'", details=details
        ) from exc
    if inspect.isclass(obj) or (callable(obj) and not hasattr(obj, "handle")):
        obj = obj()
    if not callable(getattr(obj, "handle", None)):
        raise ConfigurationError(
            f"handler '{ep.name}' does not provide an async handle(symbol, job_metadata)",
            details=details,
        )
    return obj


def build_handler_table(
    settings: Settings,
    *,
    catalog: DataTypeCatalog,
    http: httpx.AsyncClient | None = None,
    registry: Iterable[EntryPoint] | None = None,
) -> dict[str, JobHandler]:
    """Return the handler table described by ``settings`` (may be empty).

    Args:
        settings: Source of ``JOB_HANDLERS`` and the HTTP handler options.
        catalog: Data types the HTTP fallback covers.
        http: Shared client for :class:`HttpJobHandler`; required with
            ``HANDLER_BASE_URL``.
        registry: Entry points to use instead of the installed ones.

    Raises:
        ConfigurationError: On a name in ``JOB_HANDLERS`` with no registered
            handler, a handler that fails to load, or a missing HTTP client.
    """
    registered = registered_handlers(registry)
    wanted = parse_handler_names(settings.job_handlers)
    if wanted is not None:
        missing = sorted(wanted - set(registered))
        if missing:
            raise ConfigurationError(
                "JOB_HANDLERS names data types with no registered handler",
                details={"missing": missing, "registered": sorted(registered)},
            )
        registered = {name: ep for name, ep in registered.items() if name in wanted}

    table: dict[str, JobHandler] = {
        data_type: load_handler(ep) for data_type, ep in sorted(registered.items())
    }

    if settings.handler_base_url is not None:
        if http is None:
            raise ConfigurationError("an HTTP client is required for HANDLER_BASE_URL")
        for data_type in catalog.data_types:
            table.setdefault(
                data_type,
                HttpJobHandler(
                    str(settings.handler_base_url),
                    data_type,
                    http=http,
                    api_key=settings.handler_api_key,
                    timeout_s=settings.handler_timeout_s,
                ),
            )

    logger.info("handlers.loaded", extra={"extra": {"data_types": sorted(table)}})
    return table
