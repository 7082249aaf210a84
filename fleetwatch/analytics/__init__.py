"""
Analytics module for FleetWatch.

Provides vessel track analysis using NumPy:
- Great-circle distance travelled
- Average and peak speeds
- Speed trend detection
"""

from fleetwatch.analytics.track_analysis import (
    TrackAnalyzer,
    TrackAnalytics,
    TrendDirection,
)

__all__ = [
    'TrackAnalyzer',
    'TrackAnalytics',
    'TrendDirection',
]
