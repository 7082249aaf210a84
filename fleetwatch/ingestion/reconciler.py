"""
Reconciliation of an upstream snapshot against the stored vessel set.

Pure functions, no I/O: the ingestion job reads the active ids, calls
reconcile(), and applies the plan through the store gateway.

Rules:
- Every vessel in the snapshot is upserted with status=active, whether or
  not it already is (last-write-wins on every mutable field)
- Vessels active in the store but absent from the snapshot are retired
- Nothing is ever deleted
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from fleetwatch.ingestion.upstream_client import RawVessel, Snapshot
from fleetwatch.models import VesselStatus, utc_now

# Columns overwritten when an existing vessel is upserted again
VESSEL_UPDATE_COLUMNS = (
    'name',
    'mmsi',
    'status',
    'latitude',
    'longitude',
    'speed_kmh',
    'speed_knots',
    'course',
    'position_timestamp',
    'origin',
    'vessel_type',
    'image_url',
    'vessel_status',
    'marinetraffic_shipid',
    'start_date',
    'updated_at',
)


@dataclass
class ReconcilePlan:
    """What one ingestion run must write to the vessel table."""
    to_upsert: List[Dict[str, Any]] = field(default_factory=list)
    to_retire: List[str] = field(default_factory=list)
    reactivated: List[str] = field(default_factory=list)
    created: List[str] = field(default_factory=list)


def vessel_row(vessel: RawVessel, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Build the vessel table row for one snapshot record."""
    now = now or utc_now()
    return {
        'external_id': vessel.external_id,
        'name': vessel.name,
        'mmsi': vessel.mmsi,
        'status': VesselStatus.ACTIVE.value,
        'latitude': vessel.latitude,
        'longitude': vessel.longitude,
        'speed_kmh': vessel.speed_kmh,
        'speed_knots': vessel.speed_knots,
        'course': vessel.course,
        'position_timestamp': vessel.timestamp_utc,
        'origin': vessel.origin,
        'vessel_type': vessel.vessel_type,
        'image_url': vessel.image_url,
        'vessel_status': vessel.vessel_status,
        'marinetraffic_shipid': vessel.marinetraffic_shipid,
        'start_date': vessel.start_date,
        'created_at': now,
        'updated_at': now,
    }


def reconcile(
    snapshot: Snapshot,
    active_ids: Iterable[str],
    retired_ids: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> ReconcilePlan:
    """
    Diff a snapshot against the currently active stored vessels.

    Args:
        snapshot: Parsed upstream snapshot
        active_ids: external_ids currently stored with status=active
        retired_ids: external_ids currently stored with status=retired,
                     used only to report reactivations

    Returns:
        ReconcilePlan with rows to upsert and ids to retire (sorted)
    """
    now = now or utc_now()
    active = set(active_ids)
    retired = set(retired_ids)
    snapshot_ids = set(snapshot.external_ids)

    plan = ReconcilePlan()
    for vessel in snapshot.vessels:
        plan.to_upsert.append(vessel_row(vessel, now))
        if vessel.external_id in retired:
            plan.reactivated.append(vessel.external_id)
        elif vessel.external_id not in active:
            plan.created.append(vessel.external_id)

    plan.to_retire = sorted(active - snapshot_ids)
    return plan
