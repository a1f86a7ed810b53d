from __future__ import annotations

import asyncio
import math
import os
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from geocoding import PlaceInfo, ReverseGeocoder
from geolocation import (
    PERMISSION_GRANTED,
    PERMISSION_PROMPT,
    PERMISSION_UNKNOWN,
    LocationSample,
    PositionError,
    PositionSource,
    PositionWatch,
)


# ---------------------------
# Config
# ---------------------------
GEOLOCATION_TIMEOUT_S = float(os.getenv("GEOLOCATION_TIMEOUT_S", "10"))
PERMISSION_PROBE_TIMEOUT_S = float(os.getenv("PERMISSION_PROBE_TIMEOUT_S", "8"))
GEOCODE_DEBOUNCE_S = float(os.getenv("GEOCODE_DEBOUNCE_S", "0.8"))
HISTORY_LIMIT = 10

# Rough metres per degree; good enough over the few metres between fixes
METERS_PER_DEGREE = 111000.0

STATE_IDLE = "idle"
STATE_ACQUIRING = "acquiring"
STATE_WATCHING = "watching"


class LocationUnavailable(RuntimeError):
    """No fix could be obtained (no source, denied, timed out, or failed)."""


def _parse_ts(value: str) -> Optional[datetime]:
    text = (value or "").strip()
    if not text:
        return None
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def estimate_speed(previous: LocationSample, current: LocationSample) -> Optional[float]:
    """Straight-line speed in m/s between two fixes, or None if time did not advance."""
    prev_ts = _parse_ts(previous.timestamp)
    cur_ts = _parse_ts(current.timestamp)
    if prev_ts is None or cur_ts is None:
        return None
    elapsed = (cur_ts - prev_ts).total_seconds()
    if elapsed <= 0:
        return None
    distance = math.sqrt((current.lat - previous.lat) ** 2 + (current.lng - previous.lng) ** 2)
    return distance * METERS_PER_DEGREE / elapsed


class LocationTracker:
    """
    Client-side location tracking state machine.

    States:
    - idle: nothing in flight
    - acquiring: a single fix is being resolved
    - watching: a continuous watch feeds every fix through ``update_location``

    Every accepted fix overwrites the current fields, is prepended to a
    ten-entry history, and schedules a debounced reverse geocode. Stopping
    clears the current fields but keeps history.
    """

    def __init__(
        self,
        source: Optional[PositionSource],
        geocoder: Optional[ReverseGeocoder] = None,
        *,
        timeout_s: float = GEOLOCATION_TIMEOUT_S,
        geocode_debounce_s: float = GEOCODE_DEBOUNCE_S,
        probe_timeout_s: float = PERMISSION_PROBE_TIMEOUT_S,
    ):
        self.source = source
        self.geocoder = geocoder
        self.timeout_s = timeout_s
        self.geocode_debounce_s = geocode_debounce_s
        self.probe_timeout_s = probe_timeout_s

        self.state: str = STATE_IDLE
        self.current: Optional[LocationSample] = None
        self.location_accuracy: Optional[float] = None
        self.location_timestamp: Optional[str] = None
        self.history: List[LocationSample] = []
        self.place_info: PlaceInfo = PlaceInfo()
        self.geo_permission: str = PERMISSION_UNKNOWN
        self.last_error: Optional[str] = None

        self._watch: Optional[PositionWatch] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._geocode_task: Optional[asyncio.Task] = None
        self._permission_checked = False
        self._update_listeners: List[Callable[[LocationSample], Any]] = []
        self._error_listeners: List[Callable[[str], Any]] = []
        self._listener_tasks: Set[asyncio.Task] = set()

    # ---------------------------
    # Read model
    # ---------------------------
    @property
    def is_tracking(self) -> bool:
        return self.state != STATE_IDLE

    @property
    def real_time_location(self) -> Optional[List[float]]:
        if self.current is None:
            return None
        return [self.current.lat, self.current.lng]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "isTracking": self.is_tracking,
            "realTimeLocation": self.real_time_location,
            "locationAccuracy": self.location_accuracy,
            "locationTimestamp": self.location_timestamp,
            "locationHistory": [s.to_dict() for s in self.history],
            "placeInfo": self.place_info.to_dict(),
            "geoPermission": self.geo_permission,
            "lastError": self.last_error,
        }

    def add_update_listener(self, callback: Callable[[LocationSample], Any]) -> None:
        self._update_listeners.append(callback)

    def add_error_listener(self, callback: Callable[[str], Any]) -> None:
        self._error_listeners.append(callback)

    def _notify(self, listeners: List[Callable[[Any], Any]], value: Any) -> None:
        for callback in list(listeners):
            result = callback(value)
            if asyncio.iscoroutine(result):
                task = asyncio.create_task(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_tasks.discard)

    # ---------------------------
    # Update path
    # ---------------------------
    def update_location(self, sample: LocationSample) -> LocationSample:
        if sample.speed is None and self.history:
            sample = replace(sample, speed=estimate_speed(self.history[0], sample))

        self.current = sample
        self.location_accuracy = sample.accuracy
        self.location_timestamp = sample.timestamp
        self.history = [sample] + self.history[: HISTORY_LIMIT - 1]

        self._schedule_geocode(sample.lat, sample.lng)
        print(
            f"[location] update lat={sample.lat:.6f} lng={sample.lng:.6f} "
            f"accuracy={sample.accuracy} speed={sample.speed}"
        )
        self._notify(self._update_listeners, sample)
        return sample

    def _schedule_geocode(self, lat: float, lng: float) -> None:
        if self.geocoder is None:
            return
        if self._geocode_task is not None and not self._geocode_task.done():
            self._geocode_task.cancel()
        self._geocode_task = asyncio.create_task(self._debounced_geocode(lat, lng))

    async def _debounced_geocode(self, lat: float, lng: float) -> None:
        await asyncio.sleep(self.geocode_debounce_s)
        place = await self.geocoder.reverse(lat, lng)
        if place is not None:
            self.place_info = place

    # ---------------------------
    # Operations
    # ---------------------------
    async def get_current_location(self) -> LocationSample:
        if self.source is None:
            raise LocationUnavailable("Geolocation is not supported on this device.")

        if self.state != STATE_WATCHING:
            self.state = STATE_ACQUIRING
        try:
            sample = await asyncio.wait_for(self.source.get_current_position(), self.timeout_s)
        except asyncio.TimeoutError as exc:
            self._fail("Failed to get location: timed out")
            raise LocationUnavailable("Failed to get location: timed out") from exc
        except PositionError as exc:
            self._fail(f"Failed to get location: {exc}")
            raise LocationUnavailable(f"Failed to get location: {exc}") from exc

        if self.state == STATE_ACQUIRING:
            self.state = STATE_IDLE
        return self.update_location(sample)

    async def start_location_tracking(self) -> None:
        if self.source is None:
            raise LocationUnavailable("Geolocation is not supported on this device.")
        if self._watch is not None and not self._watch.cancelled:
            return

        self.state = STATE_WATCHING
        self.last_error = None
        watch = self.source.watch_position()
        self._watch = watch
        self._watch_task = asyncio.create_task(self._consume(watch))

    async def _consume(self, watch: PositionWatch) -> None:
        try:
            async for sample in watch:
                self.update_location(sample)
        except PositionError as exc:
            if self._watch is watch:
                watch.cancel()
                self._watch = None
                self._fail(f"Location tracking failed: {exc}")

    def stop_location_tracking(self) -> None:
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None
        self._watch_task = None
        if self._geocode_task is not None and not self._geocode_task.done():
            self._geocode_task.cancel()
        self._geocode_task = None
        self.state = STATE_IDLE
        self.current = None
        self.location_accuracy = None
        self.location_timestamp = None

    def clear_location_history(self) -> None:
        self.history = []

    def _fail(self, message: str) -> None:
        print(f"[location] {message}")
        self.state = STATE_IDLE
        self.last_error = message
        self._notify(self._error_listeners, message)

    # ---------------------------
    # Permission probing
    # ---------------------------
    def _on_permission_change(self, state: str) -> None:
        self.geo_permission = state

    async def _prompt_for_permission(self) -> None:
        # Throwaway fix: only there to make the platform show its prompt
        try:
            await asyncio.wait_for(self.source.get_current_position(), self.probe_timeout_s)
        except (asyncio.TimeoutError, PositionError):
            pass

    async def probe_permission(self) -> None:
        if self._permission_checked or self.source is None:
            return
        self._permission_checked = True

        try:
            permission = await self.source.query_permission()
        except Exception as exc:
            print(f"[location] permission query failed: {exc}")
            permission = None

        if permission is None:
            await self._prompt_for_permission()
            return

        self.geo_permission = permission
        self.source.add_permission_listener(self._on_permission_change)
        if permission == PERMISSION_GRANTED:
            try:
                await self.get_current_location()
            except LocationUnavailable as exc:
                print(f"[location] initial fix failed: {exc}")
        elif permission == PERMISSION_PROMPT:
            await self._prompt_for_permission()

    async def close(self) -> None:
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None
        for task in (self._watch_task, self._geocode_task):
            if task is not None and not task.done():
                task.cancel()
        self._watch_task = None
        self._geocode_task = None


__all__ = [
    "LocationTracker",
    "LocationUnavailable",
    "estimate_speed",
    "STATE_IDLE",
    "STATE_ACQUIRING",
    "STATE_WATCHING",
]
