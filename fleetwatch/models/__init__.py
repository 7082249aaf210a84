"""
Database models for FleetWatch.

Schema designed for a reconciled entity table plus append-only history:
1. Idempotent ingestion (upsert vessels, insert-or-ignore positions)
2. Efficient time-range queries for timeline replay
3. Low-latency lookups by upstream external_id
"""

from fleetwatch.models.base import (
    Base,
    build_engine,
    build_session_factory,
    session_scope,
    init_db,
    utc_now,
)
from fleetwatch.models.vessel import Vessel, VesselStatus
from fleetwatch.models.vessel_position import VesselPosition, POSITION_CONFLICT_KEYS

__all__ = [
    'Base',
    'build_engine',
    'build_session_factory',
    'session_scope',
    'init_db',
    'utc_now',
    'Vessel',
    'VesselStatus',
    'VesselPosition',
    'POSITION_CONFLICT_KEYS',
]
