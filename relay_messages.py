"""
Relay WebSocket message envelopes.

Every frame is ``{"type": <kind>, "data": {...}}``. Inbound frames are parsed
into one dataclass per kind so the server dispatches on a validated value
instead of poking at raw dicts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from geolocation import is_valid_coordinate


EMPLOYEE_CONNECTED = "employee_connected"
LOCATION_UPDATE = "location_update"
GET_LOCATION = "get_location"
PING = "ping"
GET_SERVER_STATUS = "get_server_status"


class MessageError(ValueError):
    """Frame is not JSON or does not match the shape of its kind."""


@dataclass
class EmployeeConnected:
    email: str
    employee_id: Optional[str] = None
    bus_id: Optional[str] = None


@dataclass
class LocationUpdate:
    location: Dict[str, float]
    timestamp: Optional[str] = None
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None


@dataclass
class GetLocation:
    pass


@dataclass
class Ping:
    pass


@dataclass
class GetServerStatus:
    pass


@dataclass
class UnknownMessage:
    type: str


ClientMessage = Union[
    EmployeeConnected, LocationUpdate, GetLocation, Ping, GetServerStatus, UnknownMessage
]


def _optional_number(data: Dict[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    if not is_valid_coordinate(value):
        raise MessageError(f"{key} must be a number")
    return float(value)


def _parse_location_update(data: Dict[str, Any]) -> LocationUpdate:
    location = data.get("location")
    if not isinstance(location, dict):
        raise MessageError("location is required")
    lat = location.get("lat")
    lng = location.get("lng")
    if not is_valid_coordinate(lat) or not is_valid_coordinate(lng):
        raise MessageError("location.lat and location.lng must be numbers")
    timestamp = data.get("timestamp")
    if timestamp is not None and not isinstance(timestamp, str):
        raise MessageError("timestamp must be a string")
    return LocationUpdate(
        location={"lat": float(lat), "lng": float(lng)},
        timestamp=timestamp,
        accuracy=_optional_number(data, "accuracy"),
        speed=_optional_number(data, "speed"),
        heading=_optional_number(data, "heading"),
    )


def _parse_employee_connected(data: Dict[str, Any]) -> EmployeeConnected:
    email = data.get("email")
    if not isinstance(email, str) or not email.strip():
        raise MessageError("email is required")
    employee_id = data.get("employeeId")
    bus_id = data.get("busId")
    return EmployeeConnected(
        email=email.strip(),
        employee_id=str(employee_id) if employee_id is not None else None,
        bus_id=str(bus_id) if bus_id is not None else None,
    )


def parse_client_message(raw: Union[str, bytes]) -> ClientMessage:
    try:
        envelope = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MessageError("invalid JSON") from exc
    if not isinstance(envelope, dict):
        raise MessageError("message must be an object")
    kind = envelope.get("type")
    if not isinstance(kind, str):
        raise MessageError("type is required")
    data = envelope.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MessageError("data must be an object")

    if kind == EMPLOYEE_CONNECTED:
        return _parse_employee_connected(data)
    if kind == LOCATION_UPDATE:
        return _parse_location_update(data)
    if kind == GET_LOCATION:
        return GetLocation()
    if kind == PING:
        return Ping()
    if kind == GET_SERVER_STATUS:
        return GetServerStatus()
    return UnknownMessage(type=kind)


def envelope(kind: str, **data: Any) -> Dict[str, Any]:
    return {"type": kind, "data": data}


def error_message(message: str) -> Dict[str, Any]:
    return envelope("error", message=message)


__all__ = [
    "ClientMessage",
    "EmployeeConnected",
    "GetLocation",
    "GetServerStatus",
    "LocationUpdate",
    "MessageError",
    "Ping",
    "UnknownMessage",
    "envelope",
    "error_message",
    "parse_client_message",
]
