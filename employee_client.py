"""
Employee device runner.

Replays a JSONL track as the device's GPS feed, keeps it in a
``LocationTracker``, and publishes every fix to the REST service and the
relay. Usage::

    EMPLOYEE_EMAIL=driver@example.com EMPLOYEE_ID=E1 BUS_ID=B1 python employee_client.py data/sample_track.jsonl
"""

import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

from geocoding import ReverseGeocoder
from geolocation import LocationSample, ReplayPositionSource
from location_publisher import (
    LocationPublisher,
    LocationSink,
    PublishError,
    RelayLocationSink,
    RestLocationSink,
)
from location_tracker import LocationTracker
from relay_client import RelayClient

# ---------------------------
# Config
# ---------------------------
EMPLOYEE_EMAIL = os.getenv("EMPLOYEE_EMAIL", "")
EMPLOYEE_ID = os.getenv("EMPLOYEE_ID") or None
BUS_ID = os.getenv("BUS_ID") or None
AUTH_TOKEN = os.getenv("AUTH_TOKEN") or None
REPLAY_PATH = Path(os.getenv("REPLAY_PATH", "data/sample_track.jsonl"))
REPLAY_INTERVAL_S = float(os.getenv("REPLAY_INTERVAL_S", "1"))
USE_RELAY = os.getenv("USE_RELAY", "1") not in {"0", "false", "no"}


def print_notification(level: str, message: str) -> None:
    print(f"[notify:{level}] {message}")


class EmployeeSession:
    """Owns the tracker, publisher, and relay connection for one device."""

    def __init__(
        self,
        tracker: LocationTracker,
        publisher: LocationPublisher,
        relay: Optional[RelayClient] = None,
    ) -> None:
        self.tracker = tracker
        self.publisher = publisher
        self.relay = relay
        tracker.add_update_listener(self._on_update)
        tracker.add_error_listener(self._on_error)

    async def _on_update(self, sample: LocationSample) -> None:
        try:
            await self.publisher.publish()
        except PublishError:
            # Already reported through the publisher's notify hook
            pass

    def _on_error(self, message: str) -> None:
        print_notification("error", message)

    async def start(self) -> None:
        if self.relay is not None:
            self.relay.start()
        await self.tracker.probe_permission()
        await self.tracker.start_location_tracking()

    async def stop(self) -> None:
        self.tracker.stop_location_tracking()
        await self.tracker.close()
        if self.relay is not None:
            await self.relay.disconnect()
        for sink in self.publisher.sinks:
            aclose = getattr(sink, "aclose", None)
            if aclose is not None:
                await aclose()


def build_session(
    replay_path: Path,
    email: str = EMPLOYEE_EMAIL,
    employee_id: Optional[str] = EMPLOYEE_ID,
    bus_id: Optional[str] = BUS_ID,
    use_relay: bool = USE_RELAY,
) -> EmployeeSession:
    source = ReplayPositionSource(replay_path, interval_s=REPLAY_INTERVAL_S)
    tracker = LocationTracker(source, ReverseGeocoder.from_env())

    sinks: List[LocationSink] = [RestLocationSink(token=AUTH_TOKEN)]
    relay: Optional[RelayClient] = None
    if use_relay and email:
        relay = RelayClient.from_env(email, employee_id=employee_id, bus_id=bus_id)
        relay.on("error", lambda exc: print_notification("error", str(exc)))
        sinks.append(RelayLocationSink(relay))

    publisher = LocationPublisher(
        tracker,
        sinks,
        employee_id=employee_id,
        bus_id=bus_id,
        notify=print_notification,
    )
    return EmployeeSession(tracker, publisher, relay)


async def main(argv: List[str]) -> None:
    replay_path = Path(argv[1]) if len(argv) > 1 else REPLAY_PATH
    session = build_session(replay_path)
    await session.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await session.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main(sys.argv))
    except KeyboardInterrupt:
        pass
