"""
Metrics API endpoints.

Provides endpoints for:
- GET /api/metrics/status - System status and health
"""

import logging
import time
from datetime import datetime, timezone

from flask import Blueprint, jsonify

from fleetwatch.api.helpers import get_runtime

logger = logging.getLogger(__name__)

metrics_bp = Blueprint('metrics', __name__, url_prefix='/api/metrics')


@metrics_bp.route('/status', methods=['GET'])
def get_system_status():
    """
    Get system health and status information.

    Returns:
    - Ingestion job status
    - Database connectivity
    - Cache and subscription statistics
    - Configuration info
    """
    start_time = time.perf_counter()
    runtime = get_runtime()

    db_ok = runtime.gateway.ping()
    stats = runtime.stats

    last_run = runtime.job.last_summary if runtime.job else None
    ingestion_ok = runtime.job is not None and (last_run is None or last_run.success)

    query_time_ms = (time.perf_counter() - start_time) * 1000

    return jsonify({
        'status': 'healthy' if (db_ok and ingestion_ok) else 'degraded',
        'database': {
            'connected': db_ok,
            'type': 'sqlite' if runtime.config.database.is_sqlite else 'postgresql',
        },
        'ingestion': stats['ingestion'],
        'cache': stats['cache'],
        'subscriptions': stats['subscriptions'],
        'channels': stats['channels'],
        'config': {
            'interval_minutes': runtime.config.ingestion.interval_minutes,
            'feed_configured': runtime.config.upstream.is_configured,
            'cache_ttl_seconds': runtime.config.cache.ttl_seconds,
        },
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'query_time_ms': round(query_time_ms, 2),
    })
