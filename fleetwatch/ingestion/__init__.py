"""
Data ingestion module for FleetWatch.

Handles pulling the upstream vessel snapshot, reconciling it against the
stored fleet, and appending new position samples to the database.
"""

from fleetwatch.ingestion.job import IngestionJob, JobState, RunSummary
from fleetwatch.ingestion.position_writer import PositionWriter, WriteResult
from fleetwatch.ingestion.reconciler import ReconcilePlan, reconcile
from fleetwatch.ingestion.upstream_client import RawPosition, RawVessel, Snapshot, UpstreamClient

__all__ = [
    'IngestionJob',
    'JobState',
    'RunSummary',
    'PositionWriter',
    'WriteResult',
    'ReconcilePlan',
    'reconcile',
    'RawPosition',
    'RawVessel',
    'Snapshot',
    'UpstreamClient',
]
