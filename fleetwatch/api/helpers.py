"""Shared helpers for the API blueprints."""

import time
from datetime import datetime, timezone
from typing import Optional

from flask import current_app, jsonify, request

from fleetwatch.cache import CacheResult
from fleetwatch.timeline import TimeRange


def get_runtime():
    """The FleetRuntime attached to the current app."""
    return current_app.extensions['fleetwatch']


def parse_range(default: TimeRange) -> TimeRange:
    """Read ?range= from the query string; ValueError when unknown."""
    return TimeRange.parse(request.args.get('range'), default=default)


def cached_response(result: CacheResult, start_time: float, status: int = 200, **payload):
    """
    JSON response for a cached read.

    Adds staleness flags and query timing to payload.
    """
    query_time_ms = (time.perf_counter() - start_time) * 1000

    payload.update({
        'stale': result.stale,
        'stale_reason': result.error,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'query_time_ms': round(query_time_ms, 2),
    })
    return jsonify(payload), status


def int_arg(name: str, default: Optional[int], maximum: Optional[int] = None) -> Optional[int]:
    """Non-negative integer query argument; ValueError when malformed."""
    raw = request.args.get(name)
    if raw is None:
        return default
    value = int(raw)
    if value < 0:
        raise ValueError(f'{name} must be non-negative')
    if maximum is not None:
        value = min(value, maximum)
    return value
