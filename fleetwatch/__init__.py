"""
FleetWatch Backend Package.

Vessel fleet tracking platform built with Flask, SQLAlchemy, and NumPy.

Modules:
    api/           REST endpoints for vessels, positions, timeline, ingestion and status
    models/        SQLAlchemy ORM models (Vessel, VesselPosition)
    store/         Store gateway and change notification channels
    ingestion/     Upstream feed client, reconciler, position writer and ingestion job
    analytics/     NumPy-based track analysis (distance, speeds, trend)
    services/      Cached fleet reader and the runtime that owns shared services
    cache.py       Request deduplicator with short-TTL caching and stale fallback
    subscriptions.py  One change channel per table shared by many subscribers
    timeline.py    Timeline frame builder for position replay
    config.py      Centralized configuration from environment variables
"""

__version__ = '1.0.0'
