"""WebSocket client that identifies an employee device to the relay server."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Callable, Dict, List, Optional

import websockets

from geolocation import LocationSample


# ---------------------------
# Config
# ---------------------------
WS_URL = os.getenv("WS_URL", "ws://localhost:3001")
RELAY_MAX_RECONNECT_ATTEMPTS = int(os.getenv("RELAY_MAX_RECONNECT_ATTEMPTS", "5"))
RELAY_RECONNECT_DELAY_S = float(os.getenv("RELAY_RECONNECT_DELAY_S", "1.0"))


class RelayConnectionError(RuntimeError):
    """The relay could not be reached within the reconnect budget."""


class RelayClient:
    """Reconnecting relay connection for one employee device.

    On every successful open the client announces itself with
    ``employee_connected`` so the server can attach bus metadata. Lost
    connections are retried with a delay of ``reconnect_delay_s * attempt``
    up to ``max_reconnect_attempts``; after that an ``error`` event carries a
    ``RelayConnectionError`` and the client stops.

    Usage:
        client = RelayClient.from_env(email="driver@example.com", employee_id="E1", bus_id="B1")
        client.on("message", handle_message)
        client.start()
    """

    def __init__(
        self,
        url: str,
        email: str,
        employee_id: Optional[str] = None,
        bus_id: Optional[str] = None,
        *,
        max_reconnect_attempts: int = RELAY_MAX_RECONNECT_ATTEMPTS,
        reconnect_delay_s: float = RELAY_RECONNECT_DELAY_S,
        connect: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._url = url
        self.email = email
        self.employee_id = employee_id
        self.bus_id = bus_id
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay_s = reconnect_delay_s
        self.reconnect_attempts = 0
        self._connect = connect or websockets.connect
        self._ws: Any = None
        self._connected = False
        self._stopped = False
        self._task: Optional[asyncio.Task] = None
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {}

    @classmethod
    def from_env(
        cls, email: str, employee_id: Optional[str] = None, bus_id: Optional[str] = None
    ) -> "RelayClient":
        return cls(WS_URL, email, employee_id=employee_id, bus_id=bus_id)

    @property
    def is_connected(self) -> bool:
        return self._connected

    def status(self) -> Dict[str, Any]:
        return {
            "isConnected": self._connected,
            "reconnectAttempts": self.reconnect_attempts,
            "maxReconnectAttempts": self.max_reconnect_attempts,
        }

    def on(self, event: str, callback: Callable[[Any], None]) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def _emit(self, event: str, data: Any = None) -> None:
        for callback in list(self._listeners.get(event, [])):
            callback(data)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopped = False
            self._task = asyncio.create_task(self.run())
        return self._task

    async def run(self) -> None:
        while not self._stopped:
            try:
                async with self._connect(self._url) as ws:
                    self._ws = ws
                    self._connected = True
                    self.reconnect_attempts = 0
                    print(f"[relay-client] connected to {self._url}")
                    self._emit("connected")
                    await self._send(
                        "employee_connected",
                        {
                            "email": self.email,
                            "employeeId": self.employee_id,
                            "busId": self.bus_id,
                            "role": "employee",
                        },
                    )
                    async for raw in ws:
                        self._handle_message(raw)
            except Exception as exc:
                print(f"[relay-client] connection error: {exc}")
            finally:
                self._ws = None
                was_connected = self._connected
                self._connected = False
                if was_connected:
                    self._emit("disconnected")

            if self._stopped:
                break
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                print("[relay-client] max reconnection attempts reached")
                self._stopped = True
                self._emit("error", RelayConnectionError("Max reconnection attempts reached"))
                break
            self.reconnect_attempts += 1
            print(
                f"[relay-client] reconnecting "
                f"({self.reconnect_attempts}/{self.max_reconnect_attempts})"
            )
            await asyncio.sleep(self.reconnect_delay_s * self.reconnect_attempts)

    def _handle_message(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            print(f"[relay-client] could not parse message: {exc}")
            return
        if not isinstance(message, dict):
            return
        kind = message.get("type")
        data = message.get("data")
        if kind == "error":
            print(f"[relay-client] server error: {data}")
        self._emit("message", message)

    async def _send(self, kind: str, data: Dict[str, Any]) -> bool:
        if self._ws is None or not self._connected:
            print(f"[relay-client] not connected, dropped {kind}")
            return False
        await self._ws.send(json.dumps({"type": kind, "data": data}))
        return True

    async def send_location_update(self, sample: LocationSample) -> bool:
        if not self.employee_id or not self.bus_id:
            print("[relay-client] missing employee/bus identity, location not sent")
            return False
        return await self._send(
            "location_update",
            {
                "employeeId": self.employee_id,
                "busId": self.bus_id,
                "location": {"lat": sample.lat, "lng": sample.lng},
                "timestamp": sample.timestamp,
                "accuracy": sample.accuracy,
                "speed": sample.speed,
                "heading": sample.heading,
            },
        )

    async def disconnect(self) -> None:
        self._stopped = True
        ws = self._ws
        if ws is not None:
            await ws.close()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connected = False


__all__ = ["RelayClient", "RelayConnectionError", "WS_URL"]
