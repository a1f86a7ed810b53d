import asyncio
import json
import math
import sys
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geolocation import LocationSample  # noqa: E402
from location_publisher import (  # noqa: E402
    Bounds,
    LocationPublisher,
    LocationSink,
    PublishError,
    RelayLocationSink,
    RestLocationSink,
)
from location_tracker import LocationTracker  # noqa: E402


class RecordingSink(LocationSink):
    name = "recording"

    def __init__(self):
        self.sent = []

    async def send(self, sample):
        self.sent.append(sample)


class FailingSink(LocationSink):
    name = "failing"

    def __init__(self):
        self.calls = 0

    async def send(self, sample):
        self.calls += 1
        raise PublishError("location update failed: 500 boom", status_code=500)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _fix(lat=14.5995, lng=120.9842, accuracy=6.0, second=0):
    return LocationSample(
        lat=lat, lng=lng, accuracy=accuracy, timestamp=f"2024-05-01T08:00:{second:02d}Z"
    )


def _publisher(sink=None, clock=None, notify=None, **kwargs):
    tracker = LocationTracker(None)
    options = {"employee_id": "E1", "bus_id": "B1"}
    options.update(kwargs)
    publisher = LocationPublisher(
        tracker,
        [sink or RecordingSink()],
        clock=clock or FakeClock(),
        notify=notify,
        **options,
    )
    return tracker, publisher


def test_publish_sends_sample_with_identity():
    sink = RecordingSink()
    tracker, publisher = _publisher(sink)
    tracker.update_location(_fix())

    assert asyncio.run(publisher.publish()) is True
    assert len(sink.sent) == 1
    sent = sink.sent[0]
    assert (sent.lat, sent.lng) == (14.5995, 120.9842)
    assert sent.employee_id == "E1"
    assert sent.bus_id == "B1"


@pytest.mark.parametrize(
    "lat,lng",
    [("14.5", 121.0), (None, 121.0), (14.5, True), (float("nan"), 121.0)],
)
def test_invalid_coordinates_make_no_call(lat, lng):
    sink = RecordingSink()
    tracker, publisher = _publisher(sink)
    tracker.current = LocationSample(lat=lat, lng=lng, timestamp="2024-05-01T08:00:00Z")

    assert asyncio.run(publisher.publish()) is False
    assert sink.sent == []
    assert publisher.skipped_count == 1


def test_nan_accuracy_makes_no_call():
    sink = RecordingSink()
    tracker, publisher = _publisher(sink)
    tracker.update_location(_fix(accuracy=math.nan))

    assert asyncio.run(publisher.publish()) is False
    assert sink.sent == []


def test_missing_identity_or_fix_makes_no_call():
    sink = RecordingSink()
    tracker, publisher = _publisher(sink, bus_id=None)
    tracker.update_location(_fix())
    assert asyncio.run(publisher.publish()) is False

    _, no_fix = _publisher(sink)
    assert asyncio.run(no_fix.publish()) is False
    assert sink.sent == []


def test_out_of_bounds_fix_is_dropped():
    sink = RecordingSink()
    tracker, publisher = _publisher(sink)
    tracker.update_location(_fix(lat=35.68, lng=139.69))
    assert asyncio.run(publisher.publish()) is False
    assert sink.sent == []


def test_custom_bounds():
    sink = RecordingSink()
    tracker, publisher = _publisher(
        sink, bounds=Bounds(lat_min=35.0, lat_max=36.0, lng_min=139.0, lng_max=140.0)
    )
    tracker.update_location(_fix(lat=35.68, lng=139.69))
    assert asyncio.run(publisher.publish()) is True


def test_rate_limit_one_second_apart_sends_once():
    sink = RecordingSink()
    clock = FakeClock()
    tracker, publisher = _publisher(sink, clock=clock, min_interval_s=5)

    async def scenario():
        for second in range(5):
            clock.now = float(second)
            tracker.update_location(_fix(lat=14.5 + second * 0.001, second=second))
            await publisher.publish()

    asyncio.run(scenario())
    assert len(sink.sent) == 1
    assert publisher.skipped_count == 4


def test_rate_limit_six_seconds_apart_sends_each_with_freshest_fix():
    sink = RecordingSink()
    clock = FakeClock()
    tracker, publisher = _publisher(sink, clock=clock, min_interval_s=5)

    async def scenario():
        tracker.update_location(_fix(lat=14.50, second=0))
        await publisher.publish()
        clock.now = 1.0
        tracker.update_location(_fix(lat=14.51, second=1))
        await publisher.publish()
        clock.now = 6.0
        tracker.update_location(_fix(lat=14.52, second=6))
        await publisher.publish()

    asyncio.run(scenario())
    assert [s.lat for s in sink.sent] == [14.50, 14.52]


def test_success_notifications_stop_after_a_few_fixes():
    notes = []
    clock = FakeClock()
    tracker, publisher = _publisher(clock=clock, notify=lambda level, msg: notes.append(level))

    async def scenario():
        for second in range(4):
            clock.now = second * 10.0
            tracker.update_location(_fix(second=second))
            await publisher.publish()

    asyncio.run(scenario())
    # history sizes 1 and 2 notify, 3 and 4 do not
    assert notes == ["success", "success"]


def test_failure_notifies_and_still_holds_the_window():
    notes = []
    sink = FailingSink()
    clock = FakeClock()
    tracker, publisher = _publisher(
        sink, clock=clock, notify=lambda level, msg: notes.append((level, msg))
    )
    tracker.update_location(_fix())

    with pytest.raises(PublishError) as excinfo:
        asyncio.run(publisher.publish())
    assert excinfo.value.status_code == 500

    clock.now = 1.0
    assert asyncio.run(publisher.publish()) is False
    clock.now = 6.0
    with pytest.raises(PublishError):
        asyncio.run(publisher.publish())

    assert sink.calls == 2
    assert publisher.last_sent_at == 6.0
    assert notes[0][0] == "error"
    assert "500" in notes[0][1]


def test_one_failing_sink_does_not_skip_others_or_reopen_window():
    failing = FailingSink()
    recording = RecordingSink()
    clock = FakeClock()
    tracker = LocationTracker(None)
    publisher = LocationPublisher(
        tracker, [failing, recording], employee_id="E1", bus_id="B1", clock=clock
    )

    async def scenario():
        errors = 0
        for second in range(3):
            clock.now = float(second)
            tracker.update_location(_fix(second=second))
            try:
                await publisher.publish()
            except PublishError:
                errors += 1
        return errors

    assert asyncio.run(scenario()) == 1
    assert failing.calls == 1
    assert len(recording.sent) == 1


def test_overlapping_publishes_make_one_call():
    clock = FakeClock()
    release = None
    calls = []

    class SlowSink(LocationSink):
        async def send(self, sample):
            calls.append(sample.timestamp)
            await release.wait()

    tracker, publisher = _publisher(SlowSink(), clock=clock)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        tracker.update_location(_fix(second=0))
        first = asyncio.create_task(publisher.publish())
        await asyncio.sleep(0)
        clock.now = 1.0
        tracker.update_location(_fix(second=1))
        second = asyncio.create_task(publisher.publish())
        await asyncio.sleep(0)
        release.set()
        return await first, await second

    assert asyncio.run(scenario()) == (True, False)
    assert calls == ["2024-05-01T08:00:00Z"]


def test_rest_sink_puts_json_with_bearer_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    async def scenario():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = RestLocationSink("http://tracking.local/", token="tok", client=client)
        sample = LocationSample(
            lat=14.5, lng=121.0, timestamp="2024-05-01T08:00:00Z",
            accuracy=5.0, employee_id="E1", bus_id="B1",
        )
        await sink.send(sample)
        await client.aclose()

    asyncio.run(scenario())
    request = seen[0]
    assert request.method == "PUT"
    assert str(request.url) == "http://tracking.local/api/employee/location"
    assert request.headers["Authorization"] == "Bearer tok"
    body = json.loads(request.content)
    assert body == {
        "lat": 14.5,
        "lng": 121.0,
        "employeeId": "E1",
        "busId": "B1",
        "accuracy": 5.0,
        "speed": None,
        "heading": None,
    }


def test_rest_sink_raises_on_error_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"detail": "lat and lng are required numbers"})

    async def scenario():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = RestLocationSink("http://tracking.local", client=client)
        await sink.send(LocationSample(lat=14.5, lng=121.0, timestamp="2024-05-01T08:00:00Z"))

    with pytest.raises(PublishError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status_code == 400


def test_relay_sink_raises_when_not_connected():
    class OfflineRelay:
        async def send_location_update(self, sample):
            return False

    sink = RelayLocationSink(OfflineRelay())
    with pytest.raises(PublishError):
        asyncio.run(sink.send(_fix()))
