"""Async client for the STCP transit REST API."""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import TypeAdapter, ValidationError

from transit_models import (
    REALTIME_ARRIVALS,
    ROUTE_SHAPES,
    ROUTE_STOPS,
    ROUTES,
    SCHEDULED_ARRIVALS,
    STOPS,
    RealtimeArrival,
    Route,
    RouteShape,
    RouteStops,
    ScheduledArrival,
    Stop,
)

STCP_HTTP_TIMEOUT = httpx.Timeout(20.0, connect=5.0)
STCP_HTTP_LIMITS = httpx.Limits(max_keepalive_connections=20, max_connections=100)


class TransportError(Exception):
    """A backend call failed: network error, non-2xx status or undecodable body."""

    def __init__(self, message: str, url: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class STCPClient:
    """Fetches and validates STCP resources. Every call hits the network."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[httpx.Timeout] = None,
    ) -> None:
        self._base_url = base_url.strip().rstrip("/")
        self._api_key = api_key
        self._timeout = timeout or STCP_HTTP_TIMEOUT
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_env(cls) -> "STCPClient":
        """Build an ``STCPClient`` from environment configuration.

        Required environment variables:
        * ``STCP_API_BASE_URL`` - Example: ``https://api.example.pt``
        * ``STCP_API_KEY`` - sent as the ``X-API-Key`` header.

        Optional: ``STCP_HTTP_TIMEOUT_S`` (seconds, default 20).
        """

        base_url = (os.getenv("STCP_API_BASE_URL") or "").strip()
        api_key = (os.getenv("STCP_API_KEY") or "").strip()

        missing: List[str] = []
        if not base_url:
            missing.append("STCP_API_BASE_URL")
        if not api_key:
            missing.append("STCP_API_KEY")
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

        timeout = None
        raw_timeout = (os.getenv("STCP_HTTP_TIMEOUT_S") or "").strip()
        if raw_timeout:
            timeout = httpx.Timeout(float(raw_timeout), connect=5.0)

        return cls(base_url=base_url, api_key=api_key, timeout=timeout)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, limits=STCP_HTTP_LIMITS)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def _headers(self) -> Dict[str, str]:
        return {"accept": "application/json", "X-API-Key": self._api_key}

    async def _get_data(
        self,
        path: str,
        adapter: TypeAdapter,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """GET ``path`` and return the validated ``data`` member of the envelope."""
        url = f"{self._base_url}{path}"
        client = await self._ensure_client()
        try:
            response = await client.get(url, params=params, headers=self._headers())
        except httpx.HTTPError as exc:
            raise TransportError(f"request failed: {exc}", url) from exc

        if not response.is_success:
            raise TransportError(
                f"{response.status_code} {response.reason_phrase}".strip(),
                url,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError(f"invalid JSON: {exc}", url, response.status_code) from exc
        if not isinstance(payload, dict) or "data" not in payload:
            raise TransportError("response has no data envelope", url, response.status_code)

        try:
            return adapter.validate_python(payload["data"])
        except ValidationError as exc:
            raise TransportError(
                f"unexpected payload shape: {exc.error_count()} validation errors",
                url,
                response.status_code,
            ) from exc

    async def fetch_stops(self) -> List[Stop]:
        return await self._get_data("/stcp/stops/", STOPS)

    async def fetch_routes(self) -> List[Route]:
        return await self._get_data("/stcp/routes/", ROUTES)

    async def fetch_route_stops(
        self,
        route_id: str,
        direction_id: Optional[int] = None,
        headsign: Optional[str] = None,
    ) -> RouteStops:
        """Stops of every direction of a route, or of one direction/headsign."""
        params: Dict[str, Any] = {}
        if direction_id is not None:
            params["direction_id"] = str(direction_id)
        if headsign is not None:
            params["headsign"] = headsign
        return await self._get_data(
            f"/stcp/routes/{quote(route_id, safe='')}/stops", ROUTE_STOPS, params or None
        )

    async def fetch_scheduled_arrivals(self, stop_id: str) -> List[ScheduledArrival]:
        return await self._get_data(
            f"/stcp/stops/{quote(stop_id, safe='')}/scheduled", SCHEDULED_ARRIVALS, {"all": "false"}
        )

    async def fetch_realtime_arrivals(self, stop_id: str) -> List[RealtimeArrival]:
        return await self._get_data(
            f"/stcp/stops/{quote(stop_id, safe='')}/realtime", REALTIME_ARRIVALS
        )

    async def fetch_route_shapes(self, route_id: str) -> List[RouteShape]:
        return await self._get_data(
            f"/stcp/routes/{quote(route_id, safe='')}/shapes", ROUTE_SHAPES
        )


__all__ = ["STCPClient", "TransportError", "STCP_HTTP_TIMEOUT", "STCP_HTTP_LIMITS"]
