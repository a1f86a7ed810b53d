"""Async client for the employee bus lookup on the REST service."""
from __future__ import annotations

import os
from typing import Any, Dict, Optional

import httpx

from fleet_store import BusLookupError

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:3000")
DIRECTORY_HTTP_TIMEOUT_S = float(os.getenv("DIRECTORY_HTTP_TIMEOUT_S", "10"))


class BusDirectoryClient:
    """Resolves an employee email to ``{"role", "bus"}`` over HTTP."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self._url = f"{base_url.rstrip('/')}/api/employee/my-bus"
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_env(cls) -> "BusDirectoryClient":
        """Build a client from ``API_BASE_URL`` (defaults to the local REST service)."""
        return cls(API_BASE_URL)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=DIRECTORY_HTTP_TIMEOUT_S)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_employee_bus(self, email: str) -> Dict[str, Any]:
        client = await self._ensure_client()
        try:
            response = await client.get(self._url, params={"email": email})
        except httpx.HTTPError as exc:
            raise BusLookupError(f"bus lookup failed: {exc}") from exc
        if response.status_code != 200:
            detail = response.text
            try:
                detail = response.json().get("detail", detail)
            except (ValueError, AttributeError):
                pass
            raise BusLookupError(f"bus lookup failed: {response.status_code} {detail}")
        data = response.json()
        if not isinstance(data, dict) or not isinstance(data.get("bus"), dict):
            raise BusLookupError("bus lookup returned no bus")
        return data


__all__ = ["API_BASE_URL", "BusDirectoryClient"]
