import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from fleetwatch.config import DatabaseConfig
from fleetwatch.ingestion.upstream_client import parse_envelope
from fleetwatch.models import build_engine, init_db
from fleetwatch.store import StoreGateway


@pytest.fixture
def engine(tmp_path):
    database = DatabaseConfig(url=f"sqlite:///{tmp_path / 'fleetwatch-test.db'}", timeout_seconds=10)
    engine = build_engine(database, echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def gateway(engine):
    return StoreGateway(engine)


def make_record(
    external_id: str,
    name: Optional[str] = None,
    latitude: Optional[float] = 35.9,
    longitude: Optional[float] = 14.5,
    timestamp: Optional[str] = "2025-09-01T12:00:00Z",
    positions: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """One feed record shaped the way the upstream sends it."""
    record: Dict[str, Any] = {
        "id": external_id,
        "name": name or f"Vessel {external_id}",
        "mmsi": f"2150{external_id}",
        "latitude": latitude,
        "longitude": longitude,
        "speed_kmh": 18.5,
        "speed_knots": 10.0,
        "course": 90,
        "timestamp_utc": timestamp,
        "type": "Sailing vessel",
        "origin": "Malta",
    }
    if positions is not None:
        record["positions"] = json.dumps(positions)
    record.update(extra)
    return record


def make_fix(timestamp: str, latitude: float = 35.0, longitude: float = 14.0, **extra: Any) -> Dict[str, Any]:
    fix = {"latitude": latitude, "longitude": longitude, "timestamp_utc": timestamp, "speed_knots": 8.0}
    fix.update(extra)
    return fix


@pytest.fixture
def record():
    return make_record


@pytest.fixture
def fix():
    return make_fix


class FakeFeedClient:
    """Stands in for UpstreamClient; each fetch returns the next queued outcome."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0
        self.stages: List[str] = []

    def fetch_snapshot(self, on_stage=None):
        self.calls += 1
        for stage in ("probing", "fetching"):
            self.stages.append(stage)
            if on_stage:
                on_stage(stage)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return parse_envelope({"data": outcome})


@pytest.fixture
def feed():
    return FakeFeedClient


class FakeSession:
    """Minimal requests.Session replacement with per-method response queues."""

    def __init__(self, get: Optional[list] = None, head: Optional[list] = None) -> None:
        self.headers: Dict[str, str] = {}
        self.queues = {"GET": list(get or []), "HEAD": list(head or [])}
        self.calls: List[tuple] = []

    def request(self, method: str, url: str, timeout: Optional[float] = None):
        self.calls.append((method, url, timeout))
        queue = self.queues[method]
        item = queue.pop(0) if queue else make_response(200)
        if isinstance(item, Exception):
            raise item
        return item


def make_response(status: int = 200, body: Any = None, raw: Optional[bytes] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = "https://feed.example.test/vessels"
    if raw is not None:
        response._content = raw
    elif body is not None:
        response._content = json.dumps(body).encode()
    else:
        response._content = b""
    return response


@pytest.fixture
def session_factory():
    return FakeSession


@pytest.fixture
def response():
    return make_response


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
