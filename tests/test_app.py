import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402
from fake_stcp import R1_HEADSIGN, FakeBackend, make_client  # noqa: E402
from transit_cache import TransitCache  # noqa: E402


@pytest.fixture()
def api_client(monkeypatch):
    backend = FakeBackend()
    cache = TransitCache(make_client(backend), index_retry_delay_s=0)
    monkeypatch.setattr(app_module.app.state, "transit_cache", cache)
    monkeypatch.setattr(app_module.app.state, "config_error", None)
    with TestClient(app_module.app) as client:
        yield client, backend, cache


def test_health_reports_index_state(api_client):
    client, _, _ = api_client

    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["route_stop_index"] in {"building", "built"}


def test_stops_are_fetched_once(api_client):
    client, backend, _ = api_client

    first = client.get("/v1/stops")
    second = client.get("/v1/stops")

    assert first.status_code == 200
    assert [s["id"] for s in first.json()["stops"]] == ["S1", "S2", "S3"]
    assert second.json() == first.json()
    assert backend.calls["/stcp/stops/"] == 1


def test_failed_foreground_fetch_is_502_then_recovers(api_client):
    client, backend, _ = api_client
    backend.fail("/stcp/stops/S2/scheduled")

    failed = client.get("/v1/stops/S2/scheduled")
    recovered = client.get("/v1/stops/S2/scheduled")

    assert failed.status_code == 502
    assert "scheduled arrivals" in failed.json()["detail"]
    assert recovered.status_code == 200
    assert [a["trip"]["id"] for a in recovered.json()["arrivals"]] == ["T1", "T2"]


def test_stop_arrival_board(api_client):
    client, _, _ = api_client

    response = client.get("/v1/stops/S2/arrivals")

    assert response.status_code == 200
    body = response.json()
    assert body["route_ids"] == ["R1", "R2"]
    assert [(a["kind"], a["trip_id"]) for a in body["arrivals"]] == [
        ("realtime", "T2"),
        ("scheduled", "T1"),
    ]


def test_realtime_endpoint(api_client):
    client, _, _ = api_client

    response = client.get("/v1/stops/S2/realtime")

    assert response.status_code == 200
    assert response.json()["arrivals"][0]["realtime_arrival_time"] == "10:09:00"


def test_search_stops(api_client):
    client, _, _ = api_client

    response = client.get("/v1/stops/search", params={"q": "aliados"})

    assert [s["id"] for s in response.json()["stops"]] == ["S3"]


def test_route_stop_index_wait(api_client):
    client, backend, _ = api_client

    response = client.get("/v1/route_stop_index", params={"wait": 1})
    routes_for_stop = client.get("/v1/stops/S2/routes")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "built"
    assert body["loading"] is False
    assert body["index"] == {"S1": ["R1"], "S2": ["R1", "R2"], "S3": ["R2"]}
    assert routes_for_stop.json() == {"stop_id": "S2", "route_ids": ["R1", "R2"], "loading": False}
    # Startup build and the waiting request shared one fan-out.
    assert backend.calls["/stcp/routes/R1/stops"] == 1
    assert backend.calls["/stcp/routes/R2/stops"] == 1


def test_route_direction_stops(api_client):
    client, _, _ = api_client

    response = client.get(
        "/v1/routes/R1/stops", params={"direction_id": 0, "headsign": R1_HEADSIGN}
    )

    assert response.status_code == 200
    assert [item["stop"]["id"] for item in response.json()["stops"]] == ["S1", "S2"]


def test_route_shapes(api_client):
    client, _, _ = api_client

    response = client.get("/v1/routes/R1/shapes")

    points = response.json()["shapes"][0]["points"]
    assert [p["sequence"] for p in points] == [1, 2]


def test_unconfigured_cache_is_503(monkeypatch):
    monkeypatch.setattr(app_module.app.state, "transit_cache", None)
    monkeypatch.setattr(app_module.app.state, "config_error", "Missing required environment variables: STCP_API_KEY")
    client = TestClient(app_module.app)

    response = client.get("/v1/routes")

    assert response.status_code == 503
    assert "STCP_API_KEY" in response.json()["detail"]


def test_health_lists_watched_stops(api_client):
    client, _, _ = api_client

    body = client.get("/health").json()

    assert body["realtime_watched_stops"] == []


def test_fractional_retry_delay_is_accepted(monkeypatch):
    monkeypatch.setenv("INDEX_RETRY_DELAY_MS", "12.5")
    try:
        module = importlib.reload(app_module)
        assert module.INDEX_RETRY_DELAY_S == pytest.approx(0.0125)
    finally:
        monkeypatch.delenv("INDEX_RETRY_DELAY_MS")
        importlib.reload(app_module)
    assert app_module.INDEX_RETRY_DELAY_S == pytest.approx(0.4)
