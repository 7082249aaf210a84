"""
API module for FleetWatch.

Provides REST endpoints for:
- Vessel data (fleet list, single vessel, position history, track)
- Timeline frames for replay
- Manual ingestion trigger
- System status
"""

from fleetwatch.api.ingestion import ingestion_bp
from fleetwatch.api.metrics import metrics_bp
from fleetwatch.api.timeline import timeline_bp
from fleetwatch.api.vessels import positions_bp, vessels_bp

__all__ = ['vessels_bp', 'positions_bp', 'timeline_bp', 'ingestion_bp', 'metrics_bp']
