from datetime import datetime

from fleetwatch.exceptions import StoreError
from fleetwatch.ingestion.position_writer import PositionWriter, chunked, merge_samples
from fleetwatch.ingestion.upstream_client import RawPosition, RawVessel
from fleetwatch.models import Vessel, VesselPosition

NOW = datetime(2025, 9, 1, 12, 0)


def _vessel_id(gateway, external_id: str = "A") -> int:
    row = {"external_id": external_id, "name": "Aurora", "status": "active", "created_at": NOW, "updated_at": NOW}
    return gateway.upsert(Vessel, [row], conflict_keys=["external_id"], returning=["id"]).rows[0]["id"]


def test_merge_appends_current_position_when_new(record, fix) -> None:
    vessel = RawVessel.from_dict(record(
        "A",
        timestamp="2025-09-01T12:00:00Z",
        positions=[fix("2025-09-01T10:00:00Z"), fix("2025-09-01T11:00:00Z")],
    ))

    samples = merge_samples(vessel)

    assert [s.timestamp_utc.hour for s in samples] == [10, 11, 12]


def test_merge_skips_current_position_already_in_history(record, fix) -> None:
    vessel = RawVessel.from_dict(record(
        "A",
        timestamp="2025-09-01T11:00:00Z",
        positions=[fix("2025-09-01T10:00:00Z"), fix("2025-09-01T11:00:00Z")],
    ))

    assert len(merge_samples(vessel)) == 2


def test_merge_without_current_position(record, fix) -> None:
    vessel = RawVessel.from_dict(record("A", latitude=None, positions=[fix("2025-09-01T10:00:00Z")]))

    assert len(merge_samples(vessel)) == 1


def test_chunked() -> None:
    assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert chunked([], 3) == []


def test_write_vessel_batches_and_suppresses_duplicates(gateway, record, fix) -> None:
    vessel_id = _vessel_id(gateway)
    fixes = [fix(f"2025-09-01T0{hour}:00:00Z") for hour in range(5)]
    vessel = RawVessel.from_dict(record("A", timestamp="2025-09-01T08:00:00Z", positions=fixes))
    writer = PositionWriter(gateway, batch_size=2)

    first = writer.write_vessel(vessel_id, vessel)
    second = writer.write_vessel(vessel_id, vessel)

    assert (first.written, first.attempted, first.ok) == (6, 6, True)
    assert (second.written, second.attempted, second.ok) == (0, 6, True)
    assert len(gateway.query(VesselPosition)) == 6


def test_failing_batch_stops_remaining_batches(gateway, record, fix) -> None:
    vessel_id = _vessel_id(gateway)
    vessel = RawVessel.from_dict(record(
        "A", latitude=None, positions=[fix(f"2025-09-01T0{hour}:00:00Z") for hour in range(5)]
    ))
    calls = []
    real_upsert = gateway.upsert

    def flaky_upsert(model, rows, *args, **kwargs):
        calls.append(len(rows))
        if len(calls) == 2:
            raise StoreError("disk I/O error", table="vessel_positions")
        return real_upsert(model, rows, *args, **kwargs)

    gateway.upsert = flaky_upsert
    result = PositionWriter(gateway, batch_size=2).write_vessel(vessel_id, vessel)

    assert calls == [2, 2]
    assert result.written == 2
    assert not result.ok
    assert "disk I/O error" in result.error


def test_empty_sample_list_writes_nothing(gateway) -> None:
    result = PositionWriter(gateway).write_positions(1, "A", [])

    assert (result.written, result.attempted, result.ok) == (0, 0, True)


def test_same_key_with_different_fields_keeps_first_write(gateway) -> None:
    vessel_id = _vessel_id(gateway)
    at = datetime(2025, 9, 1, 10, 0)
    writer = PositionWriter(gateway)

    first = writer.write_positions(vessel_id, "A", [RawPosition(35.0, 14.0, at, speed_knots=8.0)])
    second = writer.write_positions(vessel_id, "A", [RawPosition(36.5, 15.5, at, speed_knots=12.0)])

    rows = gateway.query(VesselPosition)
    assert (first.written, second.written) == (1, 0)
    assert len(rows) == 1
    assert (rows[0].latitude, rows[0].longitude, rows[0].speed_knots) == (35.0, 14.0, 8.0)


def test_same_key_twice_in_one_batch_stores_one_row(gateway) -> None:
    vessel_id = _vessel_id(gateway)
    at = datetime(2025, 9, 1, 10, 0)

    result = PositionWriter(gateway).write_positions(vessel_id, "A", [
        RawPosition(35.0, 14.0, at, speed_knots=8.0),
        RawPosition(36.5, 15.5, at, speed_knots=12.0),
    ])

    rows = gateway.query(VesselPosition)
    assert result.written == 1
    assert len(rows) == 1
    assert rows[0].latitude == 35.0
