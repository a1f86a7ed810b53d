"""
Device positioning sources.

A position source produces ``LocationSample`` fixes either once
(``get_current_position``) or continuously (``watch_position``). Continuous
watches are async iterators with an explicit ``cancel()`` handle, so callers
never keep watch ids around.

Example usage:
    source = QueuePositionSource()
    watch = source.watch_position()
    source.push({"lat": 14.5, "lng": 121.0, "accuracy": 8.0})
    async for sample in watch:
        ...
    watch.cancel()
"""

from __future__ import annotations

import asyncio
import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Union


PERMISSION_GRANTED = "granted"
PERMISSION_PROMPT = "prompt"
PERMISSION_DENIED = "denied"
PERMISSION_UNKNOWN = "unknown"

# Error codes mirror the ones a device positioning API reports
PERMISSION_DENIED_CODE = "permission_denied"
POSITION_UNAVAILABLE_CODE = "position_unavailable"
TIMEOUT_CODE = "timeout"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def is_valid_coordinate(value: Any) -> bool:
    """True for real, finite numbers (bools are not coordinates)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


@dataclass
class LocationSample:
    """A single GPS fix."""
    lat: float
    lng: float
    timestamp: str
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    employee_id: Optional[str] = None
    bus_id: Optional[str] = None

    @classmethod
    def from_fix(cls, fix: Dict[str, Any], timestamp: Optional[str] = None) -> "LocationSample":
        """Build a sample from a raw fix dict.

        Accepts ``lat``/``lng`` or ``latitude``/``longitude`` keys. Raises
        ``ValueError`` when either coordinate is missing or not numeric.
        """
        lat = fix.get("lat", fix.get("latitude"))
        lng = fix.get("lng", fix.get("longitude"))
        if not is_valid_coordinate(lat) or not is_valid_coordinate(lng):
            raise ValueError("lat and lng are required numbers")
        return cls(
            lat=float(lat),
            lng=float(lng),
            timestamp=timestamp or fix.get("timestamp") or _now_iso(),
            accuracy=_optional_float(fix.get("accuracy")),
            speed=_optional_float(fix.get("speed")),
            heading=_optional_float(fix.get("heading")),
            employee_id=fix.get("employeeId") or fix.get("employee_id"),
            bus_id=fix.get("busId") or fix.get("bus_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "accuracy": self.accuracy,
            "speed": self.speed,
            "heading": self.heading,
            "employeeId": self.employee_id,
            "busId": self.bus_id,
            "timestamp": self.timestamp,
        }


class PositionError(RuntimeError):
    """Raised by a source when it cannot produce a fix."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class PositionWatch:
    """Cancelable, unbounded stream of samples from a continuous watch."""

    def __init__(self, on_cancel: Optional[Callable[["PositionWatch"], None]] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def deliver(self, item: Union[LocationSample, PositionError]) -> None:
        if not self._cancelled:
            self._queue.put_nowait(item)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        # Wake a consumer blocked in __anext__
        self._queue.put_nowait(None)
        if self._on_cancel is not None:
            self._on_cancel(self)

    def __aiter__(self) -> "PositionWatch":
        return self

    async def __anext__(self) -> LocationSample:
        if self._cancelled:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None or self._cancelled:
            raise StopAsyncIteration
        if isinstance(item, PositionError):
            raise item
        return item


class PositionSource(ABC):
    """
    Abstract base class for device positioning.

    Implementations deliver fixes as ``LocationSample`` objects and report
    failures as ``PositionError``. Permission support is optional: sources
    without a permission query return ``None`` from ``query_permission``.
    """

    @abstractmethod
    async def get_current_position(self) -> LocationSample:
        """Resolve a single fix. Callers bound the wait themselves."""
        pass

    @abstractmethod
    def watch_position(self) -> PositionWatch:
        """Register a continuous watch. Cancel it with ``watch.cancel()``."""
        pass

    async def query_permission(self) -> Optional[str]:
        return None

    def add_permission_listener(self, callback: Callable[[str], None]) -> None:
        pass


class QueuePositionSource(PositionSource):
    """Push-fed source: whoever owns the device calls ``push`` with each fix."""

    def __init__(self, permission: Optional[str] = None):
        self._pending: List[asyncio.Future] = []
        self._watches: Set[PositionWatch] = set()
        self._permission = permission
        self._permission_listeners: List[Callable[[str], None]] = []

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    async def get_current_position(self) -> LocationSample:
        if self._permission == PERMISSION_DENIED:
            raise PositionError(PERMISSION_DENIED_CODE, "User denied Geolocation")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending.append(future)
        try:
            return await future
        finally:
            if future in self._pending:
                self._pending.remove(future)

    def watch_position(self) -> PositionWatch:
        watch = PositionWatch(on_cancel=self._watches.discard)
        self._watches.add(watch)
        if self._permission == PERMISSION_DENIED:
            watch.deliver(PositionError(PERMISSION_DENIED_CODE, "User denied Geolocation"))
        return watch

    def push(self, fix: Union[LocationSample, Dict[str, Any]]) -> LocationSample:
        sample = fix if isinstance(fix, LocationSample) else LocationSample.from_fix(fix)
        pending, self._pending = self._pending, []
        for future in pending:
            if not future.done():
                future.set_result(sample)
        for watch in list(self._watches):
            watch.deliver(sample)
        return sample

    def fail(self, error: PositionError) -> None:
        pending, self._pending = self._pending, []
        for future in pending:
            if not future.done():
                future.set_exception(error)
        for watch in list(self._watches):
            watch.deliver(error)

    async def query_permission(self) -> Optional[str]:
        return self._permission

    def add_permission_listener(self, callback: Callable[[str], None]) -> None:
        self._permission_listeners.append(callback)

    def set_permission(self, state: str) -> None:
        self._permission = state
        for callback in list(self._permission_listeners):
            callback(state)


class ReplayPositionSource(PositionSource):
    """Replays fixes from a JSONL track file, one fix per line.

    Lines that are not JSON or lack numeric coordinates are skipped. The
    track loops once exhausted, so watches never end on their own.
    """

    def __init__(self, path: Path, interval_s: float = 1.0):
        self._path = path
        self._interval_s = interval_s
        self._fixes: List[Dict[str, Any]] = self._load_sync()
        self._index = 0
        self._tasks: Dict[PositionWatch, asyncio.Task] = {}

    def _load_sync(self) -> List[Dict[str, Any]]:
        fixes: List[Dict[str, Any]] = []
        if not self._path.exists():
            return fixes
        with self._path.open() as f:
            for line in f:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict):
                    continue
                lat = entry.get("lat", entry.get("latitude"))
                lng = entry.get("lng", entry.get("longitude"))
                if is_valid_coordinate(lat) and is_valid_coordinate(lng):
                    fixes.append(entry)
        return fixes

    def _next_sample(self) -> LocationSample:
        if not self._fixes:
            raise PositionError(POSITION_UNAVAILABLE_CODE, f"no fixes in {self._path}")
        fix = self._fixes[self._index % len(self._fixes)]
        self._index += 1
        # Recorded timestamps are ignored; samples are stamped at capture
        return LocationSample.from_fix({**fix, "timestamp": None})

    async def get_current_position(self) -> LocationSample:
        return self._next_sample()

    def watch_position(self) -> PositionWatch:
        watch = PositionWatch(on_cancel=self._stop_watch)

        async def _run() -> None:
            while not watch.cancelled:
                try:
                    watch.deliver(self._next_sample())
                except PositionError as exc:
                    watch.deliver(exc)
                    return
                await asyncio.sleep(self._interval_s)

        self._tasks[watch] = asyncio.create_task(_run())
        return watch

    def _stop_watch(self, watch: PositionWatch) -> None:
        task = self._tasks.pop(watch, None)
        if task is not None:
            task.cancel()

    async def query_permission(self) -> Optional[str]:
        return PERMISSION_GRANTED


__all__ = [
    "LocationSample",
    "PositionError",
    "PositionWatch",
    "PositionSource",
    "QueuePositionSource",
    "ReplayPositionSource",
    "is_valid_coordinate",
]
