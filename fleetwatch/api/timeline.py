"""
Timeline replay API endpoint.

Provides:
- GET /api/timeline - A page of fleet frames for sequential playback

Query parameters:
- range: 48h|2w|all (default 48h)
- offset: first frame index to return (default 0)
- limit: max frames to return (default 100, max 1000)
"""

import logging
import time

from flask import Blueprint, jsonify

from fleetwatch.api.helpers import cached_response, get_runtime, int_arg, parse_range
from fleetwatch.timeline import TimeRange

logger = logging.getLogger(__name__)

timeline_bp = Blueprint('timeline', __name__, url_prefix='/api/timeline')

MAX_FRAMES_PER_PAGE = 1000


@timeline_bp.route('', methods=['GET'])
def get_timeline():
    """Get a page of timeline frames plus the overall time span."""
    start_time = time.perf_counter()

    try:
        time_range = parse_range(TimeRange.LAST_48_HOURS)
        offset = int_arg('offset', 0)
        limit = int_arg('limit', 100, maximum=MAX_FRAMES_PER_PAGE)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    result = get_runtime().reader.timeline(time_range)
    frames = result.value
    span = frames.time_span

    return cached_response(
        result,
        start_time,
        range=time_range.value,
        total_frames=len(frames),
        offset=offset,
        vessel_ids=frames.vessel_ids,
        time_span={
            'start': span[0].isoformat() + 'Z',
            'end': span[1].isoformat() + 'Z',
        } if span else None,
        frames=[frame.to_dict() for frame in frames.page(offset, limit)],
    )
