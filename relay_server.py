"""
Bus Location Relay: WebSocket fan-out server

Employee devices identify themselves with ``employee_connected`` and then
stream ``location_update`` frames. Identified senders have their updates
enriched with bus metadata (``enhanced_location_update``); anonymous senders
produce a stripped ``location_broadcast``. Every broadcast goes to all other
open connections, never back to the sender.

Run
---
$ uvicorn relay_server:app --port 3001
"""

from __future__ import annotations

import asyncio
import json
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from bus_directory_client import BusDirectoryClient
from fleet_store import BusLookupError
from relay_messages import (
    ClientMessage,
    EmployeeConnected,
    GetLocation,
    GetServerStatus,
    LocationUpdate,
    MessageError,
    Ping,
    envelope,
    error_message,
    parse_client_message,
)

# ---------------------------
# Config
# ---------------------------
STATUS_LOG_INTERVAL_S = float(os.getenv("STATUS_LOG_INTERVAL_S", "30"))
RELAY_PORT = int(os.getenv("PORT", "3001"))

FEATURES = ["real_time_location", "bus_data_integration", "location_broadcasting"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class EmployeeSession:
    client_id: str
    email: str
    bus_data: Dict[str, Any]
    employee_id: Optional[str] = None
    bus_id: Optional[str] = None
    last_location: Optional[Dict[str, float]] = None
    last_location_time: Optional[str] = None
    connected_at: str = field(default_factory=_now_iso)

    @property
    def bus(self) -> Dict[str, Any]:
        return self.bus_data.get("bus") or {}

    def bus_summary(self) -> Dict[str, Any]:
        bus = self.bus
        route = bus.get("route") or {}
        total = bus.get("total_seats") or 0
        available = bus.get("available_seats") or 0
        return {
            "busNumber": bus.get("bus_number"),
            "route": route.get("name"),
            "totalSeats": bus.get("total_seats"),
            "availableSeats": bus.get("available_seats"),
            "status": bus.get("status"),
            "passengers": max(total - available, 0),
        }


class RelayState:
    """All connection and session bookkeeping for one relay app."""

    def __init__(self) -> None:
        self.connections: Dict[str, WebSocket] = {}
        self.sessions: Dict[str, EmployeeSession] = {}
        self._email_by_client: Dict[str, str] = {}
        self.started_at = time.monotonic()

    def uptime(self) -> int:
        return int(time.monotonic() - self.started_at)

    def register(self, websocket: WebSocket) -> str:
        client_id = uuid.uuid4().hex[:9]
        self.connections[client_id] = websocket
        return client_id

    def attach_session(self, session: EmployeeSession) -> None:
        previous = self.sessions.get(session.email)
        if previous is not None and previous.client_id != session.client_id:
            self._email_by_client.pop(previous.client_id, None)
        stale_email = self._email_by_client.get(session.client_id)
        if stale_email is not None and stale_email != session.email:
            self.sessions.pop(stale_email, None)
        self.sessions[session.email] = session
        self._email_by_client[session.client_id] = session.email

    def session_for(self, client_id: str) -> Optional[EmployeeSession]:
        email = self._email_by_client.get(client_id)
        return self.sessions.get(email) if email is not None else None

    def unregister(self, client_id: str) -> Optional[EmployeeSession]:
        self.connections.pop(client_id, None)
        email = self._email_by_client.pop(client_id, None)
        if email is None:
            return None
        session = self.sessions.get(email)
        if session is not None and session.client_id == client_id:
            return self.sessions.pop(email)
        return None

    def status(self) -> Dict[str, Any]:
        return {
            "totalClients": len(self.connections),
            "employeeClients": len(self.sessions),
            "uptime": self.uptime(),
        }

    async def send(self, client_id: str, message: Dict[str, Any]) -> None:
        websocket = self.connections.get(client_id)
        if websocket is not None:
            await websocket.send_text(json.dumps(message))

    async def broadcast_to_others(
        self, sender_id: str, message: Dict[str, Any]
    ) -> Tuple[int, int]:
        encoded = json.dumps(message)
        sent = 0
        failed = 0
        for client_id, websocket in list(self.connections.items()):
            if client_id == sender_id:
                continue
            try:
                await websocket.send_text(encoded)
                sent += 1
            except Exception as exc:
                failed += 1
                print(f"[relay] send to {client_id} failed: {exc}")
        print(f"[relay] broadcast {message.get('type')}: {sent} sent, {failed} failed")
        return sent, failed

    def log_status(self) -> None:
        print(
            f"[relay] status: {len(self.connections)} clients, "
            f"{len(self.sessions)} employees, uptime {self.uptime()}s"
        )
        for email, session in self.sessions.items():
            line = f"[relay]   {email} bus={session.bus.get('bus_number')}"
            if session.last_location:
                line += (
                    f" last={session.last_location.get('lat')},{session.last_location.get('lng')}"
                    f" at {session.last_location_time}"
                )
            print(line)


class RelayHandler:
    """Dispatches parsed client messages against a ``RelayState``."""

    def __init__(self, state: RelayState, directory: Any) -> None:
        self.state = state
        self.directory = directory

    async def handle(self, client_id: str, message: ClientMessage) -> None:
        if isinstance(message, EmployeeConnected):
            await self._employee_connected(client_id, message)
        elif isinstance(message, LocationUpdate):
            await self._location_update(client_id, message)
        elif isinstance(message, GetLocation):
            await self.state.send(
                client_id,
                envelope(
                    "location_request",
                    message="Please provide your current location",
                    timestamp=_now_iso(),
                ),
            )
        elif isinstance(message, Ping):
            await self.state.send(
                client_id,
                envelope(
                    "pong",
                    message="Server is alive",
                    timestamp=_now_iso(),
                    clientId=client_id,
                    serverStatus=self.state.status(),
                ),
            )
        elif isinstance(message, GetServerStatus):
            await self.state.send(
                client_id,
                envelope(
                    "server_status",
                    timestamp=_now_iso(),
                    connectedEmployees=list(self.state.sessions.keys()),
                    **self.state.status(),
                ),
            )
        else:
            print(f"[relay] unknown message type from {client_id}: {message.type}")
            await self.state.send(client_id, error_message("Unknown message type"))

    async def identify(self, client_id: str, message: EmployeeConnected) -> None:
        """Run ``employee_connected`` as a background task; failures are logged."""
        try:
            await self._employee_connected(client_id, message)
        except Exception as exc:
            print(f"[relay] identify failed for {client_id}: {exc}")

    async def _employee_connected(self, client_id: str, message: EmployeeConnected) -> None:
        print(f"[relay] employee {message.email} identifying on {client_id}")
        try:
            bus_data = await self.directory.get_employee_bus(message.email)
        except BusLookupError as exc:
            print(f"[relay] no bus data for {message.email}: {exc}")
            await self.state.send(client_id, error_message("No bus data found for this employee"))
            return
        except Exception as exc:
            print(f"[relay] employee connection failed for {message.email}: {exc}")
            await self.state.send(client_id, error_message("Failed to process employee connection"))
            return

        # The client may have gone away while the lookup was in flight
        if client_id not in self.state.connections:
            print(f"[relay] {client_id} closed before {message.email} was identified")
            return

        self.state.attach_session(
            EmployeeSession(
                client_id=client_id,
                email=message.email,
                bus_data=bus_data,
                employee_id=message.employee_id,
                bus_id=message.bus_id,
            )
        )
        await self.state.send(
            client_id,
            envelope(
                "employee_connected_confirmed",
                message="Employee connected successfully",
                busData=bus_data,
                timestamp=_now_iso(),
            ),
        )
        await self.state.broadcast_to_others(
            client_id,
            envelope(
                "employee_connected",
                clientId=client_id,
                email=message.email,
                busData=bus_data,
                timestamp=_now_iso(),
            ),
        )

    async def _location_update(self, client_id: str, message: LocationUpdate) -> None:
        session = self.state.session_for(client_id)
        if session is None:
            await self.state.send(
                client_id,
                envelope(
                    "location_confirmed",
                    message="Location received (no employee data)",
                    location=message.location,
                    timestamp=_now_iso(),
                ),
            )
            await self.state.broadcast_to_others(
                client_id,
                envelope(
                    "location_broadcast",
                    clientId=client_id,
                    location=message.location,
                    timestamp=message.timestamp,
                ),
            )
            return

        session.last_location = message.location
        session.last_location_time = _now_iso()
        summary = session.bus_summary()
        await self.state.send(
            client_id,
            envelope(
                "location_confirmed",
                message="Location update sent successfully",
                location=message.location,
                timestamp=_now_iso(),
                busData=summary,
            ),
        )
        await self.state.broadcast_to_others(
            client_id,
            envelope(
                "enhanced_location_update",
                clientId=client_id,
                employeeEmail=session.email,
                location=message.location,
                timestamp=message.timestamp,
                busData=summary,
                accuracy=message.accuracy,
                speed=message.speed,
                heading=message.heading,
            ),
        )


async def _status_log_loop(state: RelayState, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        state.log_status()


def create_relay_app(
    directory: Any = None, status_log_interval_s: float = STATUS_LOG_INTERVAL_S
) -> FastAPI:
    app = FastAPI(title="Bus Location Relay")
    state = RelayState()
    app.state.relay = state
    app.state.directory = directory
    app.state.status_task = None

    @app.on_event("startup")
    async def start_relay() -> None:
        if app.state.directory is None:
            app.state.directory = BusDirectoryClient.from_env()
        if status_log_interval_s > 0:
            app.state.status_task = asyncio.create_task(
                _status_log_loop(state, status_log_interval_s)
            )
        print("[relay] server ready")

    @app.on_event("shutdown")
    async def stop_relay() -> None:
        task: Optional[asyncio.Task] = app.state.status_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        directory = app.state.directory
        if directory is not None and hasattr(directory, "aclose"):
            await directory.aclose()

    @app.get("/health")
    async def health():
        return {"ok": True}

    async def relay_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        client_id = state.register(websocket)
        handler = RelayHandler(state, app.state.directory)
        print(f"[relay] client {client_id} connected")
        try:
            await state.send(
                client_id,
                envelope(
                    "connected",
                    message="Connected to Bus Location Relay",
                    clientId=client_id,
                    features=FEATURES,
                ),
            )
            identifying: Set[asyncio.Task] = set()
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))
                raw = frame.get("text")
                if raw is None:
                    print(f"[relay] binary frame from {client_id}")
                    await state.send(client_id, error_message("Invalid message format"))
                    continue
                try:
                    message = parse_client_message(raw)
                except MessageError as exc:
                    print(f"[relay] bad message from {client_id}: {exc}")
                    await state.send(client_id, error_message("Invalid message format"))
                    continue
                if isinstance(message, EmployeeConnected):
                    # Lookup runs off the receive loop so a close mid-lookup is seen
                    task = asyncio.create_task(handler.identify(client_id, message))
                    identifying.add(task)
                    task.add_done_callback(identifying.discard)
                    continue
                if identifying:
                    # Later frames wait for the identity they were sent after
                    await asyncio.gather(*identifying)
                await handler.handle(client_id, message)
        except WebSocketDisconnect:
            pass
        finally:
            session = state.unregister(client_id)
            if session is not None:
                print(f"[relay] employee {session.email} disconnected")
            print(f"[relay] client {client_id} disconnected")
            await state.broadcast_to_others(
                client_id,
                envelope("client_disconnected", clientId=client_id, timestamp=_now_iso()),
            )

    app.add_api_websocket_route("/", relay_socket)
    app.add_api_websocket_route("/ws", relay_socket)
    return app


__all__ = ["EmployeeSession", "RelayHandler", "RelayState", "create_relay_app"]


app = create_relay_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=RELAY_PORT)
