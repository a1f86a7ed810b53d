import asyncio
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geolocation import LocationSample  # noqa: E402
from relay_client import RelayClient, RelayConnectionError  # noqa: E402


class FakeSocket:
    def __init__(self, incoming, on_open=None):
        self.incoming = list(incoming)
        self.on_open = on_open
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        if self.on_open is not None:
            await self.on_open()
        for message in self.incoming:
            yield message

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        pass


class ScriptedConnect:
    """First call yields ``socket``; every later call fails to connect."""

    def __init__(self, socket):
        self.socket = socket
        self.calls = 0

    def __call__(self, url):
        self.calls += 1
        if self.calls == 1:
            return self.socket
        raise OSError("connection refused")


def _sample():
    return LocationSample(
        lat=14.5, lng=121.0, timestamp="2024-05-01T08:00:00Z", accuracy=5.0, speed=2.0
    )


def test_client_identifies_relays_and_gives_up_after_max_attempts():
    events = []
    client = None

    async def send_fix():
        assert await client.send_location_update(_sample()) is True

    socket = FakeSocket(
        [
            json.dumps({"type": "connected", "data": {"clientId": "abc"}}),
            json.dumps({"type": "location_confirmed", "data": {"message": "ok"}}),
            "not json",
        ],
        on_open=send_fix,
    )
    connect = ScriptedConnect(socket)
    client = RelayClient(
        "ws://relay.local",
        "driver@example.com",
        employee_id="E1",
        bus_id="B1",
        max_reconnect_attempts=2,
        reconnect_delay_s=0,
        connect=connect,
    )
    for event in ("connected", "disconnected", "message", "error"):
        client.on(event, lambda data, event=event: events.append((event, data)))

    asyncio.run(client.run())

    assert socket.sent[0] == {
        "type": "employee_connected",
        "data": {
            "email": "driver@example.com",
            "employeeId": "E1",
            "busId": "B1",
            "role": "employee",
        },
    }
    update = socket.sent[1]
    assert update["type"] == "location_update"
    assert update["data"]["location"] == {"lat": 14.5, "lng": 121.0}
    assert update["data"]["busId"] == "B1"
    assert update["data"]["accuracy"] == 5.0

    names = [name for name, _ in events]
    assert names == ["connected", "message", "message", "disconnected", "error"]
    assert [data["type"] for name, data in events if name == "message"] == [
        "connected",
        "location_confirmed",
    ]
    assert isinstance(events[-1][1], RelayConnectionError)
    assert connect.calls == 3
    assert client.reconnect_attempts == 2
    assert not client.is_connected


def test_send_location_update_requires_connection_and_identity():
    anonymous = RelayClient("ws://relay.local", "driver@example.com")
    offline = RelayClient("ws://relay.local", "driver@example.com", employee_id="E1", bus_id="B1")

    assert asyncio.run(anonymous.send_location_update(_sample())) is False
    assert asyncio.run(offline.send_location_update(_sample())) is False
    assert offline.status() == {
        "isConnected": False,
        "reconnectAttempts": 0,
        "maxReconnectAttempts": offline.max_reconnect_attempts,
    }
