import pytest
from fastapi.testclient import TestClient

from room_power.api.routes import create_app
from room_power.core.state_tracker import DesiredStateTracker
from room_power.core.status import StatusReporter
from room_power.models.power import PowerState


@pytest.fixture
def tracker(registry, channel, clock):
    return DesiredStateTracker(registry, channel, cooldown=5.0, clock=clock)


@pytest.fixture
def reporter(registry, tracker):
    return StatusReporter(registry, tracker, lambda: "connected", lambda: "connected")


@pytest.fixture
def client(reporter):
    return TestClient(create_app(reporter))


@pytest.mark.asyncio
async def test_feedback_updates_observed_state(reporter, channel, tracker):
    await reporter.attach(channel)
    assert set(channel.handlers) == {"D1", "D2"}

    await tracker.request_on("R1")
    await channel.handlers["D1"][0]("D1", PowerState.ON)

    rooms = {room.room: room for room in reporter.rooms()}
    assert rooms["R1"].desired is PowerState.ON
    assert rooms["R1"].observed is PowerState.ON
    assert rooms["R2"].observed is None
    assert reporter.room_state().roomState == {"R1": PowerState.ON}


def test_health_endpoint(client, reporter):
    reporter.observed["R1"] = PowerState.OFF

    for path in ("/", "/health"):
        response = client.get(path)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "running"
        assert body["mqtt"] == "connected"
        assert body["db"] == "connected"
        assert body["rooms"] == ["R1: UNKNOWN (actual: OFF)", "R2: UNKNOWN (actual: ?)"]
        assert body["uptime"] >= 0


def test_health_reports_disconnected_collaborators(registry, tracker):
    reporter = StatusReporter(registry, tracker, lambda: "disconnected", lambda: "not connected")
    body = TestClient(create_app(reporter)).get("/health").json()

    assert body["mqtt"] == "disconnected"
    assert body["db"] == "not connected"


def test_room_state_endpoint(client, reporter):
    reporter.observed["R2"] = PowerState.ON

    response = client.get("/room-state")

    assert response.status_code == 200
    assert response.json() == {"success": True, "roomState": {"R2": "ON"}}


def test_rooms_endpoint(client):
    response = client.get("/rooms")

    assert response.status_code == 200
    rooms = response.json()
    assert [room["room"] for room in rooms] == ["R1", "R2"]
    assert rooms[0]["device"] == "D1"
    assert rooms[0]["desired"] == "UNKNOWN"
    assert rooms[0]["auto_off_in"] is None


def test_cors_headers(client):
    response = client.get("/health", headers={"Origin": "http://dashboard.local"})

    assert response.headers["access-control-allow-origin"] == "*"


def test_unknown_path_and_no_mutation(client):
    assert client.get("/missing").status_code == 404
    assert client.post("/room-state").status_code == 405
