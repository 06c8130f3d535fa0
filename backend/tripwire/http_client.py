"""Shared async JSON-over-HTTP plumbing for the external service clients.

Each concrete client names its own error class; every httpx failure is
wrapped into that class with the original exception chained.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

USER_AGENT = "tripwire/0.1.0"


class JsonApiClient:
    """Async client for a JSON API reached through one base URL.

    Parameters
    ----------
    base_url : str
        Base URL of the service. A trailing slash is ignored.
    api_key : str | None
        Bearer token sent with every request, if set.
    timeout : float
        Request timeout in seconds (default: 30.0).
    """

    error_class: type[Exception] = RuntimeError
    service_name = "API"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        if not base_url or not base_url.strip():
            raise self.error_class(f"{self.service_name} base URL must be a non-empty string")
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazily create and return the underlying httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and return the parsed JSON object response.

        Raises
        ------
        error_class
            On HTTP errors, connection failures, or invalid JSON responses.
        """
        client = await self._get_client()
        name = self.service_name
        try:
            response = await client.request(method, endpoint, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = exc.response.text[:500]
            raise self.error_class(f"{name} HTTP {exc.response.status_code}: {body}") from exc
        except httpx.TimeoutException as exc:
            raise self.error_class(f"{name} request timed out: {exc}") from exc
        except httpx.ConnectError as exc:
            raise self.error_class(f"{name} connection error: {exc}") from exc
        except httpx.RequestError as exc:
            raise self.error_class(f"{name} request error: {exc}") from exc

        try:
            parsed = response.json()
        except json.JSONDecodeError as exc:
            raise self.error_class(
                f"{name} returned non-JSON payload: {response.text[:500]}"
            ) from exc

        if not isinstance(parsed, dict):
            raise self.error_class(
                f"{name} returned non-object response: {type(parsed).__name__}"
            )
        return parsed
