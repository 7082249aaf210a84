"""
Vessel data API endpoints.

Provides endpoints for:
- GET /api/vessels - List tracked vessels
- GET /api/vessels/<external_id> - Get single vessel details
- GET /api/vessels/<external_id>/positions - Position history in a time range
- GET /api/vessels/<external_id>/track - Track analytics in a time range
- GET /api/positions/latest - Last-known position of every active vessel

All reads go through the request cache; responses say when they were
served stale after a failed refresh.
"""

import logging
import time

from flask import Blueprint, jsonify, request

from fleetwatch.api.helpers import cached_response, get_runtime, parse_range
from fleetwatch.timeline import TimeRange

logger = logging.getLogger(__name__)

vessels_bp = Blueprint('vessels', __name__, url_prefix='/api/vessels')
positions_bp = Blueprint('positions', __name__, url_prefix='/api/positions')


@vessels_bp.route('', methods=['GET'])
def list_vessels():
    """
    List tracked vessels.

    Query parameters:
    - status: active|retired|all (default active)
    """
    start_time = time.perf_counter()
    status = request.args.get('status', 'active').lower()

    try:
        result = get_runtime().reader.vessels(status)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    return cached_response(result, start_time, vessels=result.value, count=len(result.value))


@vessels_bp.route('/<external_id>', methods=['GET'])
def get_vessel(external_id: str):
    """Get a single vessel, active or retired."""
    start_time = time.perf_counter()

    result = get_runtime().reader.vessel(external_id)
    if result.value is None:
        return jsonify({'error': 'Vessel not found'}), 404

    return cached_response(result, start_time, vessel=result.value)


@vessels_bp.route('/<external_id>/positions', methods=['GET'])
def get_vessel_positions(external_id: str):
    """
    Get position history for a vessel.

    Query parameters:
    - range: 48h|2w|all (default 48h)
    """
    start_time = time.perf_counter()

    try:
        time_range = parse_range(TimeRange.LAST_48_HOURS)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    result = get_runtime().reader.positions(external_id, time_range)

    return cached_response(
        result,
        start_time,
        external_id=external_id,
        range=time_range.value,
        positions=result.value,
        count=len(result.value),
    )


@vessels_bp.route('/<external_id>/track', methods=['GET'])
def get_vessel_track(external_id: str):
    """
    Get track analytics for a vessel: distance, speeds, trend.

    Query parameters:
    - range: 48h|2w|all (default 2w)
    """
    start_time = time.perf_counter()

    try:
        time_range = parse_range(TimeRange.LAST_2_WEEKS)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    result = get_runtime().reader.track(external_id, time_range)

    return cached_response(result, start_time, range=time_range.value, track=result.value)


@positions_bp.route('/latest', methods=['GET'])
def get_latest_positions():
    """Get the last-known position of every active vessel, for the map."""
    start_time = time.perf_counter()

    result = get_runtime().reader.latest_positions()

    return cached_response(result, start_time, positions=result.value, count=len(result.value))
