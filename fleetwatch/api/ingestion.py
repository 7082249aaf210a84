"""
Ingestion control API endpoints.

Provides endpoints for:
- POST /api/ingestion/run - Trigger an ingestion run now
- GET /api/ingestion/status - Job state and the last run summary
"""

import logging

from flask import Blueprint, jsonify

from fleetwatch.api.helpers import get_runtime
from fleetwatch.exceptions import IngestionBusyError

logger = logging.getLogger(__name__)

ingestion_bp = Blueprint('ingestion', __name__, url_prefix='/api/ingestion')


@ingestion_bp.route('/run', methods=['POST'])
def run_ingestion():
    """
    Run ingestion synchronously and return the run summary.

    Returns 409 if a run is already in progress, 503 if no feed is
    configured, and 500 with the summary when the run failed.
    """
    job = get_runtime().job
    if job is None:
        return jsonify({'error': 'Ingestion is not configured'}), 503

    try:
        summary = job.run()
    except IngestionBusyError as e:
        return jsonify({'error': str(e), 'state': job.state.value}), 409

    logger.info(f'Manual ingestion finished: success={summary.success}')
    return jsonify(summary.to_dict()), 200 if summary.success else 500


@ingestion_bp.route('/status', methods=['GET'])
def ingestion_status():
    """Get job state, run counters and the last run summary."""
    job = get_runtime().job
    if job is None:
        return jsonify({'state': 'disabled'})
    return jsonify(job.stats)
