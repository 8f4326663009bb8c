# src/demand_refresh/adapters/gateways/http_presence_gateway.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Adapter Gateway: HTTP presence snapshot → ``PresenceSnapshot``.

Fetches the full presence state from a broadcast service endpoint with a
bounded retry on transport errors and 5xx responses.

Design principles:
    * A failed fetch is never reported as an empty snapshot: any transport,
      status or payload problem raises ``PresenceUnreachableError``.
    * The ``httpx.AsyncClient`` may be injected (tests use ``respx``).
"""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import SecretStr

from demand_refresh.adapters.gateways.presence_payload import parse_snapshot
from demand_refresh.domain.entities.presence import PresenceSnapshot
from demand_refresh.domain.exceptions.presence import PresenceUnreachableError
from demand_refresh.infrastructure.logging.logger import get_json_logger
from demand_refresh.infrastructure.resilience.retry import RetryPolicy, retry_async

logger = get_json_logger(__name__)

_DEFAULT_BASE_BACKOFF = 0.25
_DEFAULT_MAX_BACKOFF = 2.0


class _RetryableStatus(Exception):
    """Internal marker for 5xx/429 responses."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"presence endpoint returned {status_code}")
        self.status_code = status_code


class HttpPresenceGateway:
    """Reads presence snapshots over HTTP."""

    def __init__(
        self,
        url: str,
        *,
        api_key: SecretStr | None = None,
        http: httpx.AsyncClient | None = None,
        timeout_s: float = 5.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            url: Snapshot endpoint URL.
            api_key: Optional bearer key.
            http: Optional shared client; created and owned when omitted.
            timeout_s: Per-request timeout in seconds.
            retry_policy: Retry configuration for transient failures.
        """
        self._url = url
        self._timeout = float(timeout_s)
        self._owns_client = http is None
        self._client = http or httpx.AsyncClient(timeout=self._timeout)
        self._headers: dict[str, str] = {"Accept": "application/json"}
        if api_key is not None and api_key.get_secret_value():
            self._headers["Authorization"] = f"Bearer {api_key.get_secret_value()}"
        self._retry = retry_policy or RetryPolicy(
            total=2, base=_DEFAULT_BASE_BACKOFF, cap=_DEFAULT_MAX_BACKOFF, jitter=True
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance owns it."""
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def fetch_snapshot(self) -> PresenceSnapshot:
        async def _call() -> Any:
            response = await self._client.get(
                self._url, headers=self._headers, timeout=self._timeout
            )
            if response.status_code == 429 or response.status_code >= 500:
                raise _RetryableStatus(response.status_code)
            if response.status_code != 200:
                raise PresenceUnreachableError(
                    "presence endpoint rejected the request",
                    details={"status_code": response.status_code},
                )
            return response.json()

        def _retry_predicate(exc_or_result: Exception | Any) -> bool:
            return isinstance(exc_or_result, (_RetryableStatus, httpx.TransportError))

        try:
            payload = await retry_async(_call, policy=self._retry, retry_on=_retry_predicate)
        except _RetryableStatus as exc:
            raise PresenceUnreachableError(
                "presence endpoint unavailable", details={"status_code": exc.status_code}
            ) from exc
        except httpx.HTTPError as exc:
            raise PresenceUnreachableError(
                "presence endpoint unreachable", details={"error": type(exc).__name__}
            ) from exc
        except ValueError as exc:
            raise PresenceUnreachableError("presence snapshot is not valid JSON") from exc

        snapshot = parse_snapshot(payload)
        logger.debug(
            "presence.snapshot_fetched",
            extra={"extra": {"source": "http", "topics": len(snapshot.topics)}},
        )
        return snapshot
