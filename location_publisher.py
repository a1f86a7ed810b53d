"""
Location update publisher.

Pushes the tracker's current fix to backend sinks (REST endpoint and/or the
relay WebSocket). Each publish attempt is gated, in order, by required
identity, numeric validity, the service-area rectangle, and a fixed minimum
interval between network calls. Gated attempts are dropped, never queued.
"""

from __future__ import annotations

import math
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import httpx

from geolocation import LocationSample
from location_tracker import LocationTracker
from relay_client import RelayClient


# ---------------------------
# Config
# ---------------------------
BACKEND_BASE_URL = os.getenv("BACKEND_BASE_URL", "http://localhost:3000")
TRACKING_SERVER_URL = os.getenv("TRACKING_SERVER_URL", BACKEND_BASE_URL)
PUBLISH_MIN_INTERVAL_S = float(os.getenv("PUBLISH_MIN_INTERVAL_S", "5"))
PUBLISH_HTTP_TIMEOUT_S = float(os.getenv("PUBLISH_HTTP_TIMEOUT_S", "10"))

# Default rectangle covers the Philippine archipelago
VALID_LAT_MIN = float(os.getenv("VALID_LAT_MIN", "4.0"))
VALID_LAT_MAX = float(os.getenv("VALID_LAT_MAX", "21.5"))
VALID_LNG_MIN = float(os.getenv("VALID_LNG_MIN", "116.0"))
VALID_LNG_MAX = float(os.getenv("VALID_LNG_MAX", "127.0"))

# Success toasts are shown only while history is this short
SUCCESS_NOTIFY_HISTORY_LIMIT = 3


class PublishError(RuntimeError):
    """A sink rejected the update or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class Bounds:
    lat_min: float = VALID_LAT_MIN
    lat_max: float = VALID_LAT_MAX
    lng_min: float = VALID_LNG_MIN
    lng_max: float = VALID_LNG_MAX

    def contains(self, lat: float, lng: float) -> bool:
        return self.lat_min <= lat <= self.lat_max and self.lng_min <= lng <= self.lng_max


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_nan(value: Any) -> bool:
    return _is_number(value) and math.isnan(value)


class LocationSink(ABC):
    name = "sink"

    @abstractmethod
    async def send(self, sample: LocationSample) -> None:
        """Deliver one sample. Raise ``PublishError`` on failure."""
        pass


class RestLocationSink(LocationSink):
    """``PUT /api/employee/location`` on the REST service."""

    name = "rest"

    def __init__(
        self,
        base_url: str = TRACKING_SERVER_URL,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/api/employee/location"
        self._token = token
        self._client = client
        self._owns_client = client is None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=PUBLISH_HTTP_TIMEOUT_S)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, sample: LocationSample) -> None:
        client = await self._ensure_client()
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        body = {
            "lat": sample.lat,
            "lng": sample.lng,
            "employeeId": sample.employee_id,
            "busId": sample.bus_id,
            "accuracy": sample.accuracy,
            "speed": sample.speed,
            "heading": sample.heading,
        }
        try:
            response = await client.put(self._url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PublishError(f"location update failed: {exc}") from exc
        if not response.is_success:
            raise PublishError(
                f"location update failed: {response.status_code} {response.text}",
                status_code=response.status_code,
                body=response.text,
            )


class RelayLocationSink(LocationSink):
    """Sends ``location_update`` frames over the relay connection."""

    name = "relay"

    def __init__(self, relay: RelayClient) -> None:
        self._relay = relay

    async def send(self, sample: LocationSample) -> None:
        try:
            sent = await self._relay.send_location_update(sample)
        except Exception as exc:
            raise PublishError(f"relay send failed: {exc}") from exc
        if not sent:
            raise PublishError("relay not connected")


class LocationPublisher:
    """Publishes the tracker's live fix to every configured sink.

    ``notify(level, message)`` is the UI hook: successes are reported only
    for the first few fixes, failures always.
    """

    def __init__(
        self,
        tracker: LocationTracker,
        sinks: List[LocationSink],
        *,
        employee_id: Optional[str],
        bus_id: Optional[str],
        bounds: Optional[Bounds] = None,
        min_interval_s: float = PUBLISH_MIN_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        notify: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.tracker = tracker
        self.sinks = sinks
        self.employee_id = employee_id
        self.bus_id = bus_id
        self.bounds = bounds or Bounds()
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._notify = notify
        self.last_sent_at: Optional[float] = None
        self.sent_count = 0
        self.skipped_count = 0

    def _skip(self, reason: str) -> bool:
        self.skipped_count += 1
        print(f"[publisher] skipped: {reason}")
        return False

    async def publish(self) -> bool:
        """Send the current fix. Returns True when a network call was made."""
        if not self.bus_id or not self.employee_id:
            return self._skip("missing bus or employee id")

        current = self.tracker.current
        if current is None:
            return self._skip("no current location")

        lat, lng, accuracy = current.lat, current.lng, current.accuracy
        if not _is_number(lat) or not _is_number(lng):
            return self._skip("non-numeric coordinates")
        if _is_nan(lat) or _is_nan(lng) or _is_nan(accuracy):
            return self._skip("NaN in coordinates or accuracy")
        if not self.bounds.contains(lat, lng):
            return self._skip(f"outside service area ({lat}, {lng})")

        now = self._clock()
        if self.last_sent_at is not None and now - self.last_sent_at < self.min_interval_s:
            # Dropped; the next allowed call reads the tracker again
            self.skipped_count += 1
            return False
        # Claimed before the first await so overlapping publishes are dropped
        self.last_sent_at = now

        sample = LocationSample(
            lat=lat,
            lng=lng,
            timestamp=current.timestamp,
            accuracy=accuracy,
            speed=current.speed,
            heading=current.heading,
            employee_id=self.employee_id,
            bus_id=self.bus_id,
        )
        failures: List[PublishError] = []
        for sink in self.sinks:
            try:
                await sink.send(sample)
            except PublishError as exc:
                print(f"[publisher] {sink.name}: {exc}")
                failures.append(exc)
        self.sent_count += 1

        if failures:
            error = PublishError(
                "; ".join(str(exc) for exc in failures),
                status_code=failures[0].status_code,
                body=failures[0].body,
            )
            if self._notify is not None:
                self._notify("error", f"Failed to update location: {error}")
            raise error

        if self._notify is not None and len(self.tracker.history) < SUCCESS_NOTIFY_HISTORY_LIMIT:
            self._notify("success", "Location updated")
        return True


__all__ = [
    "Bounds",
    "LocationPublisher",
    "LocationSink",
    "PublishError",
    "RelayLocationSink",
    "RestLocationSink",
]
