# demand_refresh/infrastructure/http/errors.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.responses import Response

from demand_refresh.domain.exceptions.base import DomainError


def error_envelope(
    *,
    code: str,
    http_status: int,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    err: dict[str, Any] = {
        "code": code,
        "http_status": http_status,
        "message": message,
    }
    if details:
        err["details"] = details
    return {"error": err}


def domain_error_response(exc: DomainError, *, http_status: int = 500) -> JSONResponse:
    """Render a :class:`DomainError` as an error envelope."""
    payload = error_envelope(
        code=exc.code,
        http_status=http_status,
        message=str(exc) or exc.code,
        details=exc.details or None,
    )
    return JSONResponse(status_code=http_status, content=payload)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> Response:
    payload = error_envelope(
        code="VALIDATION_ERROR",
        http_status=422,
        message="Request validation failed",
        details={"errors": exc.errors()},
    )
    return JSONResponse(status_code=422, content=payload)


async def handle_http_exception(request: Request, exc: HTTPException) -> Response:
    payload = error_envelope(
        code="HTTP_ERROR",
        http_status=exc.status_code,
        message=exc.detail if isinstance(exc.detail, str) else "HTTP error",
        details=None if isinstance(exc.detail, str) else {"detail": exc.detail},
    )
    return JSONResponse(status_code=exc.status_code, content=payload)


async def handle_domain_error(request: Request, exc: DomainError) -> Response:
    return domain_error_response(exc, http_status=500)


async def handle_unhandled_exception(request: Request, exc: Exception) -> Response:
    payload = error_envelope(
        code="INTERNAL_ERROR",
        http_status=500,
        message="Internal server error",
    )
    return JSONResponse(status_code=500, content=payload)
