# src/demand_refresh/main.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Application Entry (Adapters Bootstrap)

Synopsis:
    FastAPI bootstrap exposing queue health checks, liveness/readiness and
    Prometheus metrics. Provides an application factory (`create_app`).

Design:
    • Bootstrap only (no business logic): routers + exception handlers.
    • Lifespan initializes DB/Redis/HTTP through the core bootstrap, builds the
      refresh services and places them on ``app.state``.
    • Domain errors render as 500 error envelopes; monitoring query failures
      are reported this way, never as alerts.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request
from starlette.responses import Response as StarletteResponse

from demand_refresh.adapters.routers import api_router, metrics_router
from demand_refresh.config.settings import get_settings
from demand_refresh.dependencies.core.bootstrap import bootstrap
from demand_refresh.dependencies.health import InfraHealthCheck
from demand_refresh.dependencies.refresh import build_services
from demand_refresh.domain.exceptions.base import DomainError
from demand_refresh.infrastructure.http.errors import (
    handle_domain_error,
    handle_http_exception,
    handle_unhandled_exception,
    handle_validation_error,
)
from demand_refresh.infrastructure.logging.logger import get_json_logger

logger = get_json_logger(__name__)


def _stable_operation_id(route: APIRoute) -> str:
    """Deterministic operationId: ``"<methods>_<path>"`` with braces removed."""
    methods = ",".join(sorted(route.methods or []))
    path = route.path_format.replace("/", "_").replace("{", "").replace("}", "")
    return f"{methods.lower()}_{path.lower()}"


@asynccontextmanager
async def runtime_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialize shared infrastructure and expose services on ``app.state``."""
    async with bootstrap() as state:
        app.state.settings = state.settings
        app.state.services = build_services(state)
        app.state.health_check = InfraHealthCheck(
            session_factory=state.session_factory, redis=state.redis
        )
        logger.info(
            "service_startup",
            extra={
                "extra": {
                    "service": state.settings.service_name,
                    "env": state.settings.environment.value,
                }
            },
        )
        yield


def _patch_exception_handlers(app: FastAPI) -> None:
    """Install structured equivalents of the default exception handlers."""

    async def _http_error_handler(request: Request, exc: Exception) -> StarletteResponse:
        if not isinstance(exc, HTTPException):
            raise exc
        return await handle_http_exception(request, exc)

    async def _validation_error_handler(request: Request, exc: Exception) -> StarletteResponse:
        if not isinstance(exc, RequestValidationError):
            raise exc
        return await handle_validation_error(request, exc)

    async def _domain_error_handler(request: Request, exc: Exception) -> StarletteResponse:
        if not isinstance(exc, DomainError):
            raise exc
        logger.error(
            "http.domain_error",
            extra={"extra": {"path": request.url.path, "code": exc.code, "error": str(exc)}},
        )
        return await handle_domain_error(request, exc)

    async def _unhandled_error_handler(request: Request, exc: Exception) -> StarletteResponse:
        logger.exception("http.unhandled_error", extra={"extra": {"path": request.url.path}})
        return await handle_unhandled_exception(request, exc)

    app.add_exception_handler(HTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(DomainError, _domain_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)


def create_app(*, with_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        with_lifespan: Attach the infrastructure lifespan. Tests disable it and
            place their own services on ``app.state``.

    Returns:
        FastAPI: Fully configured application instance.
    """
    service_version = os.getenv("SERVICE_VERSION") or "0.0.0"

    app = FastAPI(
        title="Demand Refresh",
        version=service_version,
        description="Demand-driven refresh queue: presence registry, job queue and monitoring.",
        lifespan=runtime_lifespan if with_lifespan else None,
        generate_unique_id_function=_stable_operation_id,
    )

    _patch_exception_handlers(app)
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.include_router(api_router)
    app.include_router(metrics_router)
    return app


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "demand_refresh.main:create_app",
        factory=True,
        host="0.0.0.0",  # noqa: S104
        port=int(os.getenv("PORT", "8080")),
        log_level=(settings.log_level or "info").lower(),
    )
