import pytest

from fleetwatch.app import create_app
from fleetwatch.cache import RequestCache
from fleetwatch.exceptions import StoreError, TransientUpstreamError
from fleetwatch.ingestion import IngestionJob, PositionWriter
from fleetwatch.services import FleetRuntime


@pytest.fixture
def client_feed(feed, record, fix):
    return feed([
        record("A", positions=[fix("2025-09-01T10:00:00Z")]),
        record("B"),
    ])


@pytest.fixture
def runtime(gateway, client_feed):
    job = IngestionJob(gateway, client=client_feed, writer=PositionWriter(gateway))
    runtime = FleetRuntime(gateway, cache=RequestCache(ttl_seconds=600), job=job)
    yield runtime
    runtime.stop()


@pytest.fixture
def client(runtime):
    app = create_app(start_ingestion=False, runtime=runtime)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def loaded(client, runtime):
    response = client.post("/api/ingestion/run")
    assert response.status_code == 200
    assert runtime.multiplexer.flush()
    return client


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_manual_run_returns_summary(client) -> None:
    data = client.post("/api/ingestion/run").get_json()

    assert data["success"] is True
    assert data["entities_processed"] == 2
    assert data["positions_written"] == 3


def test_failed_run_returns_500_with_summary(client, client_feed) -> None:
    client_feed.outcomes = [TransientUpstreamError("Feed unavailable after 3 attempts")]

    response = client.post("/api/ingestion/run")

    assert response.status_code == 500
    assert response.get_json()["error"] == "Feed unavailable after 3 attempts"


def test_overlapping_manual_run_is_409(client, runtime) -> None:
    runtime.job._run_lock.acquire()
    try:
        response = client.post("/api/ingestion/run")
    finally:
        runtime.job._run_lock.release()

    assert response.status_code == 409


def test_ingestion_status(loaded) -> None:
    data = loaded.get("/api/ingestion/status").get_json()

    assert data["state"] == "idle"
    assert data["run_count"] == 1
    assert data["last_run"]["success"] is True


def test_list_vessels(loaded) -> None:
    data = loaded.get("/api/vessels").get_json()

    assert data["count"] == 2
    assert [v["external_id"] for v in data["vessels"]] == ["A", "B"]
    assert data["stale"] is False
    assert "query_time_ms" in data


def test_list_vessels_rejects_unknown_status(client) -> None:
    assert client.get("/api/vessels?status=sunk").status_code == 400


def test_get_vessel(loaded) -> None:
    response = loaded.get("/api/vessels/A")

    assert response.status_code == 200
    assert response.get_json()["vessel"]["name"] == "Vessel A"


def test_get_unknown_vessel_is_404(client) -> None:
    response = client.get("/api/vessels/ghost")

    assert response.status_code == 404
    assert response.get_json() == {"error": "Vessel not found"}


def test_vessel_positions(loaded) -> None:
    data = loaded.get("/api/vessels/A/positions?range=all").get_json()

    assert data["range"] == "all"
    assert data["count"] == 2
    assert [p["timestamp_utc"] for p in data["positions"]] == ["2025-09-01T10:00:00Z", "2025-09-01T12:00:00Z"]


def test_vessel_positions_rejects_unknown_range(client) -> None:
    assert client.get("/api/vessels/A/positions?range=1y").status_code == 400


def test_vessel_track(loaded) -> None:
    data = loaded.get("/api/vessels/A/track?range=all").get_json()

    assert data["track"]["sample_count"] == 2
    assert data["track"]["elapsed_hours"] == 2.0


def test_latest_positions(loaded) -> None:
    data = loaded.get("/api/positions/latest").get_json()

    assert data["count"] == 2
    assert {p["external_id"] for p in data["positions"]} == {"A", "B"}


def test_timeline_page(loaded) -> None:
    data = loaded.get("/api/timeline?range=all&offset=1&limit=1").get_json()

    assert data["total_frames"] == 2
    assert data["offset"] == 1
    assert data["vessel_ids"] == ["A", "B"]
    assert data["time_span"] == {"start": "2025-09-01T10:00:00Z", "end": "2025-09-01T12:00:00Z"}
    assert len(data["frames"]) == 1
    assert data["frames"][0]["vessel_count"] == 2


@pytest.mark.parametrize("query", ["offset=-1", "limit=many", "range=forever"])
def test_timeline_rejects_bad_arguments(client, query) -> None:
    assert client.get(f"/api/timeline?{query}").status_code == 400


def test_empty_timeline(client) -> None:
    data = client.get("/api/timeline").get_json()

    assert data["total_frames"] == 0
    assert data["time_span"] is None
    assert data["frames"] == []


def test_store_failure_is_503(client, gateway) -> None:
    def broken_query(*args, **kwargs):
        raise StoreError("connection refused", table="vessels")

    gateway.query = broken_query

    response = client.get("/api/vessels")

    assert response.status_code == 503
    assert "connection refused" in response.get_json()["detail"]


def test_metrics_status(loaded) -> None:
    data = loaded.get("/api/metrics/status").get_json()

    assert data["status"] == "healthy"
    assert data["database"]["connected"] is True
    assert data["subscriptions"]["tables"]["vessels"]["subscribers"] == 1
    assert data["channels"] == {"vessels": 1, "vessel_positions": 1}


def test_unknown_route_is_json_404(client) -> None:
    response = client.get("/api/nowhere")

    assert response.status_code == 404
    assert response.get_json() == {"error": "Not found"}


def test_without_feed_ingestion_is_disabled(gateway) -> None:
    runtime = FleetRuntime(gateway)
    app = create_app(start_ingestion=False, runtime=runtime)
    try:
        client = app.test_client()

        assert client.post("/api/ingestion/run").status_code == 503
        assert client.get("/api/ingestion/status").get_json() == {"state": "disabled"}
        assert client.get("/api/metrics/status").get_json()["status"] == "degraded"
    finally:
        runtime.stop()
