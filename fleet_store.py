"""Fleet directory: employees, their assigned buses, routes and terminals."""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional


class FleetStoreError(RuntimeError):
    """The backing file is missing or unreadable."""


class BusLookupError(LookupError):
    """No user, assignment, bus, or route for the requested employee."""


@dataclass
class BusRoute:
    id: str
    name: str
    start_terminal_id: Optional[str] = None
    end_terminal_id: Optional[str] = None
    start_terminal_name: Optional[str] = None
    end_terminal_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "start_terminal_id": self.start_terminal_id,
            "end_terminal_id": self.end_terminal_id,
            "start_terminal_name": self.start_terminal_name,
            "end_terminal_name": self.end_terminal_name,
        }


@dataclass
class TrackedBus:
    id: str
    bus_number: str
    total_seats: int
    available_seats: int
    status: str
    route: BusRoute
    current_location: Optional[Dict[str, float]] = None

    @property
    def passengers(self) -> int:
        return max(self.total_seats - self.available_seats, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "route": self.route.to_dict(),
            "status": self.status,
            "bus_number": self.bus_number,
            "total_seats": self.total_seats,
            "available_seats": self.available_seats,
            "current_location": self.current_location,
        }


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_location(value: Any) -> Optional[Dict[str, float]]:
    if not isinstance(value, dict):
        return None
    lat = value.get("lat")
    lng = value.get("lng")
    if isinstance(lat, (int, float)) and isinstance(lng, (int, float)):
        return {"lat": float(lat), "lng": float(lng)}
    return None


def _index(entries: Any, key: str = "id") -> Dict[str, Dict[str, Any]]:
    indexed: Dict[str, Dict[str, Any]] = {}
    if not isinstance(entries, list):
        return indexed
    for entry in entries:
        if isinstance(entry, dict) and entry.get(key) is not None:
            indexed[str(entry[key])] = entry
    return indexed


class FleetStore:
    """Read-only JSON directory, reloaded on demand.

    Expected layout::

        {"users": [...], "buses": [...], "routes": [...], "terminals": [...]}
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._users: Dict[str, Dict[str, Any]] = {}
        self._buses: Dict[str, Dict[str, Any]] = {}
        self._routes: Dict[str, Dict[str, Any]] = {}
        self._terminals: Dict[str, Dict[str, Any]] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        if not self._path.exists():
            raise FleetStoreError(f"fleet file not found: {self._path}")
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            raise FleetStoreError(f"fleet file unreadable: {exc}") from exc
        if not isinstance(raw, dict):
            raise FleetStoreError("fleet file must contain an object")
        users = _index(raw.get("users"), key="email")
        self._users = {email.strip().lower(): entry for email, entry in users.items()}
        self._buses = _index(raw.get("buses"))
        self._routes = _index(raw.get("routes"))
        self._terminals = _index(raw.get("terminals"))

    async def reload(self) -> None:
        async with self._lock:
            self._load_sync()

    def _terminal_name(self, terminal_id: Optional[str]) -> Optional[str]:
        if not terminal_id:
            return None
        terminal = self._terminals.get(str(terminal_id))
        return terminal.get("name") if terminal else None

    async def get_employee_bus(self, email: str) -> Dict[str, Any]:
        """Return ``{"role", "bus"}`` for the employee, or raise ``BusLookupError``."""
        async with self._lock:
            user = self._users.get(email.strip().lower())
            if user is None:
                raise BusLookupError("User not found")
            bus_id = user.get("assigned_bus_id")
            if not bus_id:
                raise BusLookupError("No bus assigned to this user")
            bus = self._buses.get(str(bus_id))
            if bus is None:
                raise BusLookupError("Bus not found")
            route = self._routes.get(str(bus.get("route_id")))
            if route is None:
                raise BusLookupError("Route not found")

            start_id = route.get("start_terminal_id")
            end_id = route.get("end_terminal_id")
            tracked = TrackedBus(
                id=str(bus["id"]),
                bus_number=str(bus.get("bus_number") or ""),
                total_seats=_as_int(bus.get("total_seats")),
                available_seats=_as_int(bus.get("available_seats")),
                status=bus.get("status") or "unknown",
                current_location=_as_location(bus.get("current_location")),
                route=BusRoute(
                    id=str(route["id"]),
                    name=route.get("name") or "",
                    start_terminal_id=start_id,
                    end_terminal_id=end_id,
                    start_terminal_name=self._terminal_name(start_id),
                    end_terminal_name=self._terminal_name(end_id),
                ),
            )
            return {"role": user.get("role"), "bus": tracked}

    async def count_buses(self) -> int:
        async with self._lock:
            return len(self._buses)


__all__ = ["BusLookupError", "BusRoute", "FleetStore", "FleetStoreError", "TrackedBus"]
