"""
Fleet reader - the cached read path every consumer goes through.

Each public read is keyed by its query signature and served through the
RequestCache, so N map clients polling the same endpoint cost one query
per TTL window. Cache entries are invalidated by change notifications
from the subscription multiplexer:

    vessels written          -> 'vessel*' and 'latest' entries
    vessel_positions written -> 'positions:*', 'timeline:*', 'track:*'

Notifications arrive on the multiplexer's dispatch thread, so a read made
right after a write may still see the previous value briefly.

Reads return CacheResult so callers can tell the user when they are
looking at stale data after a failed refresh.
"""

import logging
import uuid
from typing import Callable, Dict, List, Optional

from fleetwatch.analytics import TrackAnalyzer
from fleetwatch.cache import CacheResult, RequestCache
from fleetwatch.config import config
from fleetwatch.models import Vessel, VesselPosition, VesselStatus, utc_now
from fleetwatch.store import ChangeEvent, StoreGateway
from fleetwatch.subscriptions import SubscriptionMultiplexer
from fleetwatch.timeline import TimelineFrames, TimeRange

logger = logging.getLogger(__name__)

# Cache key prefixes dropped when a table changes
INVALIDATION_PREFIXES: Dict[str, tuple] = {
    Vessel.__tablename__: ('vessel', 'latest'),
    VesselPosition.__tablename__: ('positions:', 'timeline:', 'track:'),
}

VESSEL_STATUS_FILTERS = {
    'active': VesselStatus.ACTIVE.value,
    'retired': VesselStatus.RETIRED.value,
    'all': None,
}


class FleetReader:
    """
    Cached, deduplicated queries over vessels and positions.

    Call start() to wire cache invalidation to the change multiplexer;
    stop() removes those subscriptions again.
    """

    def __init__(
        self,
        gateway: StoreGateway,
        cache: RequestCache,
        multiplexer: SubscriptionMultiplexer,
        analyzer: Optional[TrackAnalyzer] = None,
    ):
        self.gateway = gateway
        self.cache = cache
        self.multiplexer = multiplexer
        self.analyzer = analyzer or TrackAnalyzer()
        self._unsubscribers: List[Callable[[], None]] = []

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Invalidate cached reads whenever the underlying tables change."""
        if self._unsubscribers:
            return
        for table in INVALIDATION_PREFIXES:
            self._unsubscribers.append(
                self.multiplexer.subscribe(table, self._on_change, subscriber_id=f'cache-invalidator-{table}')
            )

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def _on_change(self, event: ChangeEvent) -> None:
        for prefix in INVALIDATION_PREFIXES.get(event.table, ()):
            self.cache.invalidate(prefix)
        logger.debug(f'{event.table} changed ({event.operation.value}, {event.rowcount} rows), cache invalidated')

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def vessels(self, status: str = 'active') -> CacheResult:
        """
        List vessels as dicts, ordered by name.

        Raises:
            ValueError for an unknown status filter
        """
        if status not in VESSEL_STATUS_FILTERS:
            raise ValueError(f'Unknown vessel status {status!r} (expected active, retired or all)')

        def fetch():
            value = VESSEL_STATUS_FILTERS[status]
            filters = {'status': value} if value else None
            return [v.to_dict() for v in self.gateway.query(Vessel, filters=filters, order_by='name')]

        return self.cache.get_or_fetch_with_fallback(f'vessels:{status}', fetch)

    def vessel(self, external_id: str) -> CacheResult:
        """One vessel as a dict, or value None when unknown."""
        def fetch():
            rows = self.gateway.query(Vessel, filters={'external_id': external_id}, limit=1)
            return rows[0].to_dict() if rows else None

        return self.cache.get_or_fetch_with_fallback(f'vessel:{external_id}', fetch)

    def latest_positions(self) -> CacheResult:
        """Last-known position of every active vessel that has one."""
        def fetch():
            vessels = self.gateway.query(Vessel, filters={'status': VesselStatus.ACTIVE.value})
            return [
                {
                    'external_id': v.external_id,
                    'name': v.name,
                    'latitude': v.latitude,
                    'longitude': v.longitude,
                    'speed_knots': v.speed_knots,
                    'course': v.course,
                    'timestamp_utc': v.position_timestamp.isoformat() + 'Z' if v.position_timestamp else None,
                }
                for v in vessels if v.has_position
            ]

        return self.cache.get_or_fetch_with_fallback('latest', fetch)

    def positions(self, external_id: str, time_range: TimeRange = TimeRange.LAST_48_HOURS) -> CacheResult:
        """One vessel's position history inside the window, oldest first."""
        def fetch():
            return [p.to_dict() for p in self._position_rows(time_range, external_id)]

        return self.cache.get_or_fetch_with_fallback(
            f'positions:{external_id}:{time_range.value}',
            fetch,
            ttl=config.cache.positions_ttl_seconds,
        )

    def track(self, external_id: str, time_range: TimeRange = TimeRange.LAST_2_WEEKS) -> CacheResult:
        """Track analytics for one vessel inside the window."""
        def fetch():
            samples = self._position_rows(time_range, external_id)
            return self.analyzer.analyze(external_id, samples).to_dict()

        return self.cache.get_or_fetch_with_fallback(
            f'track:{external_id}:{time_range.value}',
            fetch,
            ttl=config.cache.positions_ttl_seconds,
        )

    def timeline(self, time_range: TimeRange = TimeRange.LAST_48_HOURS) -> CacheResult:
        """Restartable frame sequence over every vessel's positions."""
        def fetch():
            now = utc_now()
            return TimelineFrames(self._position_rows(time_range, now=now), time_range, now=now)

        return self.cache.get_or_fetch_with_fallback(
            f'timeline:{time_range.value}',
            fetch,
            ttl=config.cache.frames_ttl_seconds,
        )

    def _position_rows(self, time_range: TimeRange, external_id: Optional[str] = None, now=None) -> list:
        cutoff = time_range.cutoff(now)
        where = [VesselPosition.timestamp_utc >= cutoff] if cutoff is not None else None
        filters = {'external_id': external_id} if external_id else None
        return self.gateway.query(VesselPosition, filters=filters, where=where, order_by='timestamp_utc')

    # -------------------------------------------------------------------------
    # Polling + realtime hybrid
    # -------------------------------------------------------------------------

    def watch(self, name: str, callback: Callable[[CacheResult], None], **params) -> Callable[[], None]:
        """
        Deliver a read now and again after every relevant change.

        Refreshes run on the multiplexer's dispatch thread.

        Args:
            name: 'vessels', 'vessel', 'latest_positions', 'positions',
                  'track' or 'timeline'
            callback: Receives each CacheResult
            params: Arguments for the named read

        Returns:
            Function that stops the watch
        """
        reads = {
            'vessels': (self.vessels, (Vessel,)),
            'vessel': (self.vessel, (Vessel,)),
            'latest_positions': (self.latest_positions, (Vessel,)),
            'positions': (self.positions, (VesselPosition,)),
            'track': (self.track, (VesselPosition,)),
            'timeline': (self.timeline, (VesselPosition,)),
        }
        if name not in reads:
            raise ValueError(f'Unknown read {name!r}')
        read, models = reads[name]
        watch_id = uuid.uuid4().hex[:9]

        def refresh(event: ChangeEvent) -> None:
            # Subscription order is not guaranteed, so drop the stale entries first
            self._on_change(event)
            callback(read(**params))

        callback(read(**params))

        unsubscribers = [
            self.multiplexer.subscribe(model.__tablename__, refresh, subscriber_id=f'watch-{name}-{watch_id}')
            for model in models
        ]

        def unwatch() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return unwatch
