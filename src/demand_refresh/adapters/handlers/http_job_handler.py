# src/demand_refresh/adapters/handlers/http_job_handler.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""HTTP Job Handler (Adapters Layer)

Purpose:
    Delegate one refresh to an external fetcher service: ``POST
    <base_url>/<data_type>`` with ``{"symbol", "data_type", "job_metadata"}``.

Response mapping:
    * 2xx: success. ``data_size_bytes`` is read from the JSON body when present,
      otherwise the response body length is used.
    * 409: the fetcher's storage rejected an older write
      (``StaleDataRejectedError``).
    * 423: the fetcher lost a lock race (``TransientContentionError``); the job
      is retried without consuming its retry budget.
    * any other status or a transport failure: ``HandlerError``.

Notes:
    No retries happen here. Retrying is the queue's job (``fail`` with backoff).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import SecretStr

from demand_refresh.domain.exceptions.queue import (
    HandlerError,
    StaleDataRejectedError,
    TransientContentionError,
)
from demand_refresh.domain.interfaces.handlers.job_handler import HandlerResult


class HttpJobHandler:
    """Refresh one data type by calling an HTTP fetcher endpoint."""

    def __init__(
        self,
        base_url: str,
        data_type: str,
        *,
        http: httpx.AsyncClient,
        api_key: SecretStr | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._url = f"{str(base_url).rstrip('/')}/{data_type}"
        self._data_type = data_type
        self._client = http
        self._timeout = float(timeout_s)
        self._headers: dict[str, str] = {"Accept": "application/json"}
        if api_key is not None and api_key.get_secret_value():
            self._headers["Authorization"] = f"Bearer {api_key.get_secret_value()}"

    @property
    def url(self) -> str:
        return self._url

    async def handle(self, symbol: str, job_metadata: Mapping[str, Any]) -> HandlerResult:
        body = {
            "symbol": symbol,
            "data_type": self._data_type,
            "job_metadata": dict(job_metadata),
        }
        details = {"symbol": symbol, "data_type": self._data_type}
        try:
            response = await self._client.post(
                self._url, json=body, headers=self._headers, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            raise HandlerError(
                f"fetcher unreachable: {type(exc).__name__}", details=details
            ) from exc

        status = response.status_code
        if status == 409:
            raise StaleDataRejectedError(_reason(response, "stale data rejected"), details=details)
        if status == 423:
            raise TransientContentionError(_reason(response, "row locked"), details=details)
        if not 200 <= status < 300:
            raise HandlerError(
                _reason(response, f"fetcher returned {status}"),
                details={**details, "status_code": status},
            )
        return HandlerResult(data_size_bytes=_data_size(response))


def _reason(response: httpx.Response, default: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return default
    if isinstance(payload, Mapping):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return default


def _data_size(response: httpx.Response) -> int:
    try:
        payload = response.json()
    except ValueError:
        return len(response.content)
    if isinstance(payload, Mapping):
        raw = payload.get("data_size_bytes", payload.get("dataSizeBytes"))
        if isinstance(raw, int) and not isinstance(raw, bool) and raw >= 0:
            return raw
    return len(response.content)
