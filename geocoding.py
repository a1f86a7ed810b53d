"""Reverse geocoding: coordinates to a human-readable place."""

from __future__ import annotations

import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

import httpx


# ---------------------------
# Config
# ---------------------------
GOOGLE_GEOCODE_URL = os.getenv(
    "GOOGLE_GEOCODE_URL", "https://maps.googleapis.com/maps/api/geocode/json"
)
NOMINATIM_REVERSE_URL = os.getenv(
    "NOMINATIM_REVERSE_URL", "https://nominatim.openstreetmap.org/reverse"
)
GEOCODE_USER_AGENT = os.getenv("GEOCODE_USER_AGENT", "BusLocationRelay/1.0")
GEOCODE_TIMEOUT_S = float(os.getenv("GEOCODE_TIMEOUT_S", "5"))


@dataclass
class PlaceInfo:
    city: Optional[str] = None
    barangay: Optional[str] = None
    country: Optional[str] = None
    display: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _first(mapping: Dict[str, Any], keys: List[str]) -> Optional[str]:
    for key in keys:
        value = mapping.get(key)
        if value:
            return value
    return None


def parse_google_result(data: Dict[str, Any]) -> Optional[PlaceInfo]:
    """Extract a ``PlaceInfo`` from a Google Geocoding response body."""
    if data.get("status") != "OK" or not data.get("results"):
        return None
    result = data["results"][0]
    by_type: Dict[str, str] = {}
    for component in result.get("address_components") or []:
        for kind in component.get("types") or []:
            # First component wins for each type
            by_type.setdefault(kind, component.get("long_name"))
    return PlaceInfo(
        city=_first(by_type, ["locality", "administrative_area_level_2", "administrative_area_level_1"]),
        barangay=_first(by_type, ["sublocality_level_1", "neighborhood", "sublocality", "locality"]),
        country=by_type.get("country"),
        display=result.get("formatted_address"),
    )


def parse_nominatim_result(data: Dict[str, Any]) -> PlaceInfo:
    """Extract a ``PlaceInfo`` from a Nominatim ``jsonv2`` reverse response."""
    addr = data.get("address") or {}
    country = addr.get("country")
    if not country and addr.get("country_code"):
        country = str(addr["country_code"]).upper()
    return PlaceInfo(
        city=_first(addr, ["city", "town", "municipality", "state_district", "county"]),
        barangay=_first(addr, ["barangay", "suburb", "village", "neighbourhood", "quarter"]),
        country=country,
        display=data.get("display_name"),
    )


class ReverseGeocoder:
    """Google first when a key is configured, then Nominatim.

    ``reverse`` never raises: provider errors are logged and ``None`` is
    returned so callers keep whatever place they already had.
    """

    def __init__(
        self,
        google_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        google_url: str = GOOGLE_GEOCODE_URL,
        nominatim_url: str = NOMINATIM_REVERSE_URL,
    ) -> None:
        self._google_key = (google_key or "").strip() or None
        self._client = client
        self._owns_client = client is None
        self._google_url = google_url
        self._nominatim_url = nominatim_url

    @classmethod
    def from_env(cls) -> "ReverseGeocoder":
        return cls(google_key=os.getenv("GOOGLE_MAPS_API_KEY"))

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=GEOCODE_TIMEOUT_S)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _reverse_google(self, lat: float, lng: float) -> Optional[PlaceInfo]:
        if not self._google_key:
            return None
        client = await self._ensure_client()
        response = await client.get(
            self._google_url,
            params={"latlng": f"{lat},{lng}", "key": self._google_key},
        )
        if response.status_code != 200:
            print(f"[geocode] google error: {response.status_code}")
            return None
        return parse_google_result(response.json())

    async def _reverse_nominatim(self, lat: float, lng: float) -> Optional[PlaceInfo]:
        client = await self._ensure_client()
        response = await client.get(
            self._nominatim_url,
            params={
                "format": "jsonv2",
                "lat": lat,
                "lon": lng,
                "zoom": 14,
                "addressdetails": 1,
            },
            headers={"Accept": "application/json", "User-Agent": GEOCODE_USER_AGENT},
        )
        if response.status_code != 200:
            print(f"[geocode] nominatim error: {response.status_code}")
            return None
        return parse_nominatim_result(response.json())

    async def reverse(self, lat: float, lng: float) -> Optional[PlaceInfo]:
        try:
            place = await self._reverse_google(lat, lng)
            if place is not None:
                return place
        except Exception as exc:
            print(f"[geocode] google lookup failed: {exc}")
        try:
            return await self._reverse_nominatim(lat, lng)
        except Exception as exc:
            print(f"[geocode] nominatim lookup failed: {exc}")
            return None


__all__ = ["PlaceInfo", "ReverseGeocoder", "parse_google_result", "parse_nominatim_result"]
