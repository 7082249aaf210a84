"""
Vessel track analysis using NumPy.

Turns one vessel's ordered position samples into a voyage summary:

1. Distance: great-circle length of the track (vectorized haversine)
2. Speed: reported speed statistics, plus the speed implied by distance
   over elapsed time for samples that carry no reported speed
3. Trend: linear regression on reported speed (accelerating/slowing)

All calculations work on arrays built once from the sample list, so a
two-week track of a few thousand fixes costs a handful of vector ops.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088
KM_PER_NAUTICAL_MILE = 1.852


class TrendDirection(str, Enum):
    """Trend direction classification."""
    INCREASING = 'increasing'
    STABLE = 'stable'
    DECREASING = 'decreasing'
    UNKNOWN = 'unknown'


@dataclass
class SpeedStats:
    """Reported speed statistics in knots."""
    mean: float
    std: float
    min_val: float
    max_val: float
    count: int


@dataclass
class TrackAnalytics:
    """
    Voyage summary for a single vessel.

    Distances are great-circle, so they understate the real track when
    fixes are sparse.
    """
    external_id: str
    sample_count: int
    first_fix: Optional[datetime] = None
    last_fix: Optional[datetime] = None
    elapsed_hours: float = 0.0

    distance_km: float = 0.0
    distance_nm: float = 0.0
    average_speed_knots: Optional[float] = None
    max_leg_speed_knots: Optional[float] = None

    reported_speed: Optional[SpeedStats] = None
    speed_trend: TrendDirection = TrendDirection.UNKNOWN

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict for API responses."""
        speed = self.reported_speed
        return {
            'external_id': self.external_id,
            'sample_count': self.sample_count,
            'first_fix': self.first_fix.isoformat() + 'Z' if self.first_fix else None,
            'last_fix': self.last_fix.isoformat() + 'Z' if self.last_fix else None,
            'elapsed_hours': round(self.elapsed_hours, 2),
            'distance': {
                'km': round(self.distance_km, 2),
                'nm': round(self.distance_nm, 2),
            },
            'speed': {
                'average_knots': _round(self.average_speed_knots),
                'max_leg_knots': _round(self.max_leg_speed_knots),
                'reported_mean_knots': _round(speed.mean) if speed else None,
                'reported_max_knots': _round(speed.max_val) if speed else None,
                'trend': self.speed_trend.value,
            },
        }


def _round(value: Optional[float], digits: int = 1) -> Optional[float]:
    return round(value, digits) if value is not None else None


def haversine_km(lat1: np.ndarray, lon1: np.ndarray, lat2: np.ndarray, lon2: np.ndarray) -> np.ndarray:
    """Great-circle distance in km between paired points (degrees)."""
    lat1, lon1, lat2, lon2 = (np.radians(a) for a in (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


class TrackAnalyzer:
    """
    Computes TrackAnalytics from position samples.

    Configuration:
    - min_samples: Minimum reported speeds for statistics and trend (default 3)
    - trend_threshold: Normalized slope above which a trend is declared
    """

    def __init__(self, min_samples: int = 3, trend_threshold: float = 0.1):
        self.min_samples = min_samples
        self.trend_threshold = trend_threshold

    def analyze(self, external_id: str, samples: Sequence) -> TrackAnalytics:
        """
        Analyze one vessel's track.

        samples need latitude, longitude, timestamp_utc and speed_knots
        attributes; they are sorted by timestamp here.
        """
        ordered: List = sorted(samples, key=lambda s: s.timestamp_utc)
        analytics = TrackAnalytics(external_id=external_id, sample_count=len(ordered))
        if not ordered:
            return analytics

        analytics.first_fix = ordered[0].timestamp_utc
        analytics.last_fix = ordered[-1].timestamp_utc

        # Convert to NumPy arrays
        lats = np.array([s.latitude for s in ordered], dtype=np.float64)
        lons = np.array([s.longitude for s in ordered], dtype=np.float64)
        seconds = np.array(
            [(s.timestamp_utc - analytics.first_fix).total_seconds() for s in ordered],
            dtype=np.float64,
        )
        speeds = np.array(
            [s.speed_knots if s.speed_knots is not None else np.nan for s in ordered],
            dtype=np.float64,
        )

        analytics.elapsed_hours = float(seconds[-1] / 3600)

        if len(ordered) > 1:
            legs_km = haversine_km(lats[:-1], lons[:-1], lats[1:], lons[1:])
            leg_hours = np.diff(seconds) / 3600

            analytics.distance_km = float(legs_km.sum())
            analytics.distance_nm = analytics.distance_km / KM_PER_NAUTICAL_MILE

            if analytics.elapsed_hours > 0:
                analytics.average_speed_knots = analytics.distance_nm / analytics.elapsed_hours

            moving = leg_hours > 0
            if moving.any():
                leg_knots = (legs_km[moving] / KM_PER_NAUTICAL_MILE) / leg_hours[moving]
                analytics.max_leg_speed_knots = float(leg_knots.max())

        analytics.reported_speed = self._speed_stats(speeds)
        analytics.speed_trend = self._compute_trend(seconds, speeds)

        logger.debug(
            f'Track {external_id}: {analytics.sample_count} fixes, '
            f'{analytics.distance_nm:.1f} nm over {analytics.elapsed_hours:.1f} h'
        )
        return analytics

    def _speed_stats(self, speeds: np.ndarray) -> Optional[SpeedStats]:
        valid = speeds[~np.isnan(speeds)]
        if len(valid) < self.min_samples:
            return None

        return SpeedStats(
            mean=float(np.mean(valid)),
            std=float(np.std(valid)),
            min_val=float(np.min(valid)),
            max_val=float(np.max(valid)),
            count=len(valid),
        )

    def _compute_trend(self, seconds: np.ndarray, values: np.ndarray) -> TrendDirection:
        """
        Determine trend direction using linear regression.

        Returns trend based on slope of best-fit line, normalized by the
        value range over the elapsed time.
        """
        valid_mask = ~np.isnan(values)
        t = seconds[valid_mask]
        v = values[valid_mask]

        if len(t) < self.min_samples or np.ptp(t) == 0:
            return TrendDirection.UNKNOWN

        try:
            slope, _ = np.polyfit(t, v, 1)
        except np.linalg.LinAlgError:
            return TrendDirection.UNKNOWN

        value_range = np.ptp(v)
        if value_range == 0:
            return TrendDirection.STABLE

        # Change across the whole window relative to the spread of values
        normalized_slope = slope * np.ptp(t) / value_range

        if normalized_slope > self.trend_threshold:
            return TrendDirection.INCREASING
        elif normalized_slope < -self.trend_threshold:
            return TrendDirection.DECREASING
        else:
            return TrendDirection.STABLE
