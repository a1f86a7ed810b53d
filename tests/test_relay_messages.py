import json
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from relay_messages import (  # noqa: E402
    EmployeeConnected,
    GetServerStatus,
    LocationUpdate,
    MessageError,
    Ping,
    UnknownMessage,
    envelope,
    parse_client_message,
)


def _raw(kind, data=None):
    message = {"type": kind}
    if data is not None:
        message["data"] = data
    return json.dumps(message)


def test_employee_connected():
    message = parse_client_message(
        _raw("employee_connected", {"email": " driver@example.com ", "busId": 7})
    )
    assert message == EmployeeConnected(email="driver@example.com", employee_id=None, bus_id="7")


def test_location_update_with_optional_fields():
    message = parse_client_message(
        _raw(
            "location_update",
            {
                "location": {"lat": 14.5, "lng": 121},
                "timestamp": "2024-05-01T08:00:00Z",
                "accuracy": 4,
                "heading": None,
            },
        )
    )
    assert isinstance(message, LocationUpdate)
    assert message.location == {"lat": 14.5, "lng": 121.0}
    assert message.accuracy == 4.0
    assert message.speed is None
    assert message.heading is None


def test_messages_without_data():
    assert parse_client_message(_raw("ping")) == Ping()
    assert parse_client_message(_raw("get_server_status", {})) == GetServerStatus()
    assert parse_client_message(_raw("wave")) == UnknownMessage(type="wave")


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        json.dumps({"data": {}}),
        json.dumps({"type": "ping", "data": "hello"}),
        _raw("employee_connected", {"email": ""}),
        _raw("location_update", {}),
        _raw("location_update", {"location": {"lat": "14.5", "lng": 121.0}}),
        _raw("location_update", {"location": {"lat": True, "lng": 121.0}}),
        _raw("location_update", {"location": {"lat": 14.5, "lng": 121.0}, "speed": "fast"}),
        _raw("location_update", {"location": {"lat": 14.5, "lng": 121.0}, "timestamp": 17}),
    ],
)
def test_invalid_messages(raw):
    with pytest.raises(MessageError):
        parse_client_message(raw)


def test_envelope_shape():
    assert envelope("pong", message="Server is alive") == {
        "type": "pong",
        "data": {"message": "Server is alive"},
    }
