"""
Bus Location Service: employee location API (FastAPI)

Purpose
=======
Accept live GPS fixes from employee devices, keep the latest position per
bus, and fan every accepted update out to admin dashboards over
Server-Sent Events.

Key features
------------
- Employee bus lookup (user -> assigned bus -> route -> terminals).
- Location ingest with last-write-wins registry per bus.
- SSE stream of every accepted update for admin viewers.
- Best-effort daily CSV log of accepted samples.

Run
---
$ uvicorn app:app --reload --port 3000

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx pydantic
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Set
import asyncio, json, os
from datetime import datetime, timezone
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse

from fleet_store import BusLookupError, FleetStore, FleetStoreError
from geolocation import is_valid_coordinate
from location_storage import BusLocationRecord, BusLocationStorage

# ---------------------------
# Config
# ---------------------------
FLEET_PATH = Path(os.getenv("FLEET_PATH", "data/fleet.json"))
LOCATION_LOG_DIR = Path(os.getenv("LOCATION_LOG_DIR", "data/locations"))
PORT = int(os.getenv("PORT", "3000"))
SSE_QUEUE_SIZE = 10


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _number_or_none(value: Any) -> Optional[float]:
    return value if is_valid_coordinate(value) else None


def _id_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def normalize_location_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    """Validate an inbound fix and stamp it with server time.

    Raises HTTPException(400) unless ``lat`` and ``lng`` are finite numbers.
    Non-finite optional readings are dropped to ``None``.
    """
    lat = body.get("lat")
    lng = body.get("lng")
    if not is_valid_coordinate(lat) or not is_valid_coordinate(lng):
        raise HTTPException(status_code=400, detail="lat and lng are required numbers")
    return {
        "lat": lat,
        "lng": lng,
        "accuracy": _number_or_none(body.get("accuracy")),
        "speed": _number_or_none(body.get("speed")),
        "heading": _number_or_none(body.get("heading")),
        "employeeId": _id_or_none(body.get("employeeId")),
        "busId": _id_or_none(body.get("busId")),
        "timestamp": _now_iso(),
    }


class LocationRegistry:
    """Latest payload per bus. Overwritten on every update, never expires."""

    def __init__(self) -> None:
        self._latest: Dict[str, Dict[str, Any]] = {}

    def set(self, bus_id: str, payload: Dict[str, Any]) -> None:
        self._latest[bus_id] = payload

    def get(self, bus_id: str) -> Optional[Dict[str, Any]]:
        return self._latest.get(bus_id)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [{"busId": bus_id, "latest": latest} for bus_id, latest in self._latest.items()]

    def __len__(self) -> int:
        return len(self._latest)


class SseBroadcaster:
    """Fan-out of pre-encoded SSE frames to bounded subscriber queues."""

    def __init__(self, queue_size: int = SSE_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self.subscribers: Set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self.subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self.subscribers.discard(q)

    def publish(self, event_type: str, data: Dict[str, Any]) -> int:
        encoded = f"data: {json.dumps({'type': event_type, 'data': data})}\n\n"
        delivered = 0
        for q in list(self.subscribers):
            try:
                q.put_nowait(encoded)
                delivered += 1
            except asyncio.QueueFull:
                pass  # Drop update for slow clients
        return delivered

    async def stream(self):
        q = self.subscribe()
        try:
            yield ": connected\n\n"
            while True:
                encoded = await q.get()
                yield encoded
        finally:
            self.unsubscribe(q)


def _open_fleet_store(path: Path) -> Optional[FleetStore]:
    try:
        return FleetStore(path)
    except FleetStoreError as exc:
        print(f"[fleet] store not configured: {exc}")
        return None


def create_app(
    fleet_store: Optional[FleetStore] = None,
    location_storage: Optional[BusLocationStorage] = None,
) -> FastAPI:
    app = FastAPI(title="Bus Location Service")
    app.state.registry = LocationRegistry()
    app.state.broadcaster = SseBroadcaster()
    app.state.fleet_store = fleet_store
    app.state.location_storage = location_storage

    @app.on_event("startup")
    async def init_stores() -> None:
        if app.state.fleet_store is None:
            app.state.fleet_store = _open_fleet_store(FLEET_PATH)
        if app.state.location_storage is None:
            app.state.location_storage = BusLocationStorage(LOCATION_LOG_DIR)
        print(
            f"[location] service ready "
            f"(fleet={'yes' if app.state.fleet_store else 'no'}, log={LOCATION_LOG_DIR})"
        )

    @app.on_event("shutdown")
    async def close_streams() -> None:
        app.state.broadcaster.subscribers.clear()

    @app.get("/health")
    async def health():
        return {"ok": True}

    # ---------------------------
    # Employee
    # ---------------------------
    @app.get("/api/employee/my-bus")
    async def employee_my_bus(email: Optional[str] = Query(None)):
        if not email or not email.strip():
            raise HTTPException(status_code=400, detail="email is required")
        store: Optional[FleetStore] = app.state.fleet_store
        if store is None:
            raise HTTPException(status_code=500, detail="Fleet store is not configured")
        try:
            result = await store.get_employee_bus(email)
        except BusLookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except FleetStoreError as exc:
            print(f"[fleet] lookup failed: {exc}")
            raise HTTPException(status_code=500, detail="Fleet store unavailable")

        bus = result["bus"].to_dict()
        if bus["current_location"] is None:
            latest = app.state.registry.get(bus["id"])
            if latest is not None:
                bus["current_location"] = {"lat": latest["lat"], "lng": latest["lng"]}
        return {"role": result["role"], "bus": bus}

    @app.put("/api/employee/location")
    async def employee_location(body: Dict[str, Any] = Body(...)):
        payload = normalize_location_payload(body)
        if payload["busId"]:
            app.state.registry.set(payload["busId"], payload)
        app.state.broadcaster.publish("location_update", payload)

        storage: Optional[BusLocationStorage] = app.state.location_storage
        if storage is not None:
            try:
                storage.insert(BusLocationRecord.from_payload(payload))
            except Exception as exc:
                print(f"[location] log insert failed: {exc}")
        return {"success": True}

    # ---------------------------
    # Admin
    # ---------------------------
    @app.get("/api/admin/stream")
    async def admin_stream():
        return StreamingResponse(app.state.broadcaster.stream(), media_type="text/event-stream")

    @app.post("/api/admin/fleet/reload")
    async def admin_fleet_reload():
        store: Optional[FleetStore] = app.state.fleet_store
        if store is None:
            store = _open_fleet_store(FLEET_PATH)
            if store is None:
                raise HTTPException(status_code=500, detail="Fleet store is not configured")
            app.state.fleet_store = store
        else:
            try:
                await store.reload()
            except FleetStoreError as exc:
                print(f"[fleet] reload failed: {exc}")
                raise HTTPException(status_code=500, detail=str(exc))
        buses = await store.count_buses()
        print(f"[fleet] reloaded {buses} buses")
        return {"ok": True, "buses": buses}

    @app.get("/api/admin/locations")
    async def admin_locations():
        return app.state.registry.snapshot()

    @app.get("/api/admin/bus/{bus_id}/location")
    async def admin_bus_location(bus_id: str):
        return {"busId": bus_id, "latest": app.state.registry.get(bus_id)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
