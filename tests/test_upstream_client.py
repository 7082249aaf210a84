from datetime import datetime

import pytest
import requests

from fleetwatch.exceptions import (
    ConfigError,
    EmptySnapshotError,
    MalformedPayloadError,
    TransientUpstreamError,
)
from fleetwatch.ingestion.upstream_client import RawVessel, UpstreamClient, parse_envelope, parse_timestamp


def _client(session, **kwargs) -> tuple:
    sleeps = []
    client = UpstreamClient(
        "https://feed.example.test/vessels",
        "token-123",
        session=session,
        sleep=sleeps.append,
        **kwargs,
    )
    return client, sleeps


def test_parse_timestamp_normalizes_to_naive_utc() -> None:
    assert parse_timestamp("2025-09-01T12:00:00Z") == datetime(2025, 9, 1, 12, 0, 0)
    assert parse_timestamp("2025-09-01T14:00:00+02:00") == datetime(2025, 9, 1, 12, 0, 0)
    assert parse_timestamp(0) == datetime(1970, 1, 1)
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None
    assert parse_timestamp(True) is None


@pytest.mark.parametrize("value", ["0001-01-01T00:30:00+01:00", "9999-12-31T23:30:00-05:00"])
def test_parse_timestamp_rejects_offsets_that_overflow_utc(value) -> None:
    assert parse_timestamp(value) is None


def test_raw_vessel_rejects_records_without_id_or_name(record) -> None:
    assert RawVessel.from_dict(record("A")) is not None
    assert RawVessel.from_dict({"name": "No id"}) is None
    assert RawVessel.from_dict({"id": "X"}) is None
    assert RawVessel.from_dict(["not", "a", "dict"]) is None


def test_raw_vessel_drops_out_of_range_coordinates(record) -> None:
    vessel = RawVessel.from_dict(record("A", latitude=123.0, longitude=14.0))

    assert vessel.latitude is None
    assert vessel.longitude is None
    assert vessel.current_position() is None


def test_raw_vessel_history_decodes_string_and_skips_bad_entries(record, fix) -> None:
    vessel = RawVessel.from_dict(record("A", positions=[
        fix("2025-09-01T10:00:00Z"),
        {"latitude": 35.0, "longitude": 14.0},  # no timestamp
        fix("2025-09-01T11:00:00Z", latitude=95.0),  # off the globe
        fix("2025-09-01T11:30:00Z"),
    ]))

    history = vessel.history()

    assert [p.timestamp_utc for p in history] == [
        datetime(2025, 9, 1, 10, 0),
        datetime(2025, 9, 1, 11, 30),
    ]


def test_raw_vessel_history_accepts_inline_array(record, fix) -> None:
    data = record("A")
    data["positions"] = [fix("2025-09-01T10:00:00Z")]

    assert len(RawVessel.from_dict(data).history()) == 1


@pytest.mark.parametrize("positions", ["{not json", '{"latitude": 1}'])
def test_raw_vessel_history_malformed_raises(record, positions) -> None:
    vessel = RawVessel.from_dict(record("A"))
    vessel.positions_json = positions

    with pytest.raises(MalformedPayloadError):
        vessel.history()


def test_parse_envelope_requires_data_list() -> None:
    with pytest.raises(MalformedPayloadError):
        parse_envelope({"vessels": []})
    with pytest.raises(MalformedPayloadError):
        parse_envelope(["A"])


def test_parse_envelope_with_no_valid_records_is_empty_snapshot() -> None:
    with pytest.raises(EmptySnapshotError):
        parse_envelope({"data": []})
    with pytest.raises(EmptySnapshotError):
        parse_envelope({"data": [{"name": "no id"}]})


def test_parse_envelope_skips_invalid_and_keeps_last_duplicate(record) -> None:
    snapshot = parse_envelope({"data": [
        record("A", name="First"),
        {"id": "broken"},
        record("B"),
        record("A", name="Second"),
    ]})

    assert sorted(snapshot.external_ids) == ["A", "B"]
    assert snapshot.skipped_records == 1
    assert {v.external_id: v.name for v in snapshot.vessels}["A"] == "Second"


def test_client_requires_url_and_token() -> None:
    with pytest.raises(ConfigError):
        UpstreamClient("", "token")
    with pytest.raises(ConfigError):
        UpstreamClient("https://feed.example.test", None)


def test_fetch_snapshot_probes_then_pulls_with_bearer_token(session_factory, response, record) -> None:
    session = session_factory(get=[response(200, {"data": [record("A"), record("B")]})])
    client, sleeps = _client(session, timeout=12)

    snapshot = client.fetch_snapshot()

    assert len(snapshot) == 2
    assert [call[0] for call in session.calls] == ["HEAD", "GET"]
    assert all(call[2] == 12 for call in session.calls)
    assert session.headers["Authorization"] == "Bearer token-123"
    assert sleeps == []


def test_fetch_snapshot_reports_stages(session_factory, response, record) -> None:
    session = session_factory(get=[response(200, {"data": [record("A")]})])
    client, _ = _client(session)
    stages = []

    client.fetch_snapshot(on_stage=stages.append)

    assert stages == ["probing", "fetching"]


def test_fetch_snapshot_retries_transient_failures_with_backoff(session_factory, response, record) -> None:
    session = session_factory(
        head=[requests.exceptions.ConnectionError("reset"), response(200), response(200)],
        get=[response(503), response(200, {"data": [record("A")]})],
    )
    client, sleeps = _client(session, max_retries=3, base_delay=0.5)

    snapshot = client.fetch_snapshot()

    assert snapshot.external_ids == ["A"]
    assert sleeps == [0.5, 1.0]


def test_fetch_snapshot_gives_up_after_max_retries(session_factory) -> None:
    session = session_factory(head=[requests.exceptions.Timeout("slow")] * 3)
    client, sleeps = _client(session, max_retries=3, base_delay=1.0)

    with pytest.raises(TransientUpstreamError):
        client.fetch_snapshot()

    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_non_json_body_is_retried(session_factory, response, record) -> None:
    session = session_factory(get=[
        response(200, raw=b"<html>gateway error</html>"),
        response(200, {"data": [record("A")]}),
    ])
    client, sleeps = _client(session)

    assert client.fetch_snapshot().external_ids == ["A"]
    assert len(sleeps) == 1


def test_schema_violation_is_not_retried(session_factory, response) -> None:
    session = session_factory(get=[response(200, {"unexpected": True})])
    client, sleeps = _client(session)

    with pytest.raises(MalformedPayloadError):
        client.fetch_snapshot()

    assert sleeps == []
    assert [call[0] for call in session.calls] == ["HEAD", "GET"]


def test_empty_snapshot_is_not_retried(session_factory, response) -> None:
    session = session_factory(get=[response(200, {"data": []})])
    client, sleeps = _client(session)

    with pytest.raises(EmptySnapshotError):
        client.fetch_snapshot()

    assert sleeps == []


def test_http_error_carries_status_code(session_factory, response) -> None:
    session = session_factory(head=[response(429)])
    client, _ = _client(session, max_retries=1)

    with pytest.raises(TransientUpstreamError) as excinfo:
        client.fetch_snapshot()

    assert excinfo.value.status_code == 429
