"""
Request deduplicator and short-TTL cache for the read path.

Sits between the API layer and the store gateway. Every read is keyed by
its query signature (e.g. 'vessels:active', 'positions:<id>:48h') and
goes through get_or_fetch(), which provides two guarantees:

- Cache: within ttl of a successful fetch, the same key is answered from
  memory without calling the fetch function again
- Coalescing: while a fetch for a key is outstanding, further callers for
  that key wait on the same result instead of issuing a duplicate query

Failed fetches are never cached, but every caller that was coalesced onto
the failing fetch sees the same exception.

Invalidation (driven by change notifications) marks entries so they are
no longer served fresh. Invalidated and expired entries stay around until
the next sweep, so get_or_fetch_with_fallback() can still answer with the
last known value - flagged stale - when a refresh fails.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from fleetwatch.config import config

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached value with the time it was stored."""
    value: Any
    stored_at: float
    ttl: float
    invalidated: bool = False

    def is_fresh(self, now: float) -> bool:
        return not self.invalidated and (now - self.stored_at) < self.ttl


@dataclass
class CacheResult:
    """
    Value returned by the fallback read path.

    stale is True when value came from an older cache entry because the
    fresh fetch failed; error then holds the failure message.
    """
    value: Any
    stale: bool = False
    error: Optional[str] = None


@dataclass
class _InFlight:
    """An outstanding fetch other callers can wait on."""
    future: Future
    started_at: float
    invalidated: bool = False


class RequestCache:
    """
    Thread-safe keyed cache with in-flight request coalescing.

    One lock guards both the entry map and the in-flight map; fetch
    functions always run outside it.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
        inflight_max_age_seconds: Optional[float] = None,
        inflight_wait_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds or config.cache.ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds or config.cache.sweep_interval_seconds
        self.inflight_max_age_seconds = inflight_max_age_seconds or config.cache.inflight_max_age_seconds
        self.inflight_wait_seconds = inflight_wait_seconds or config.cache.inflight_wait_seconds
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, _InFlight] = {}
        self._lock = threading.Lock()

        # Background sweeper
        self._sweeper: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        # Statistics
        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._stale_served = 0
        self._fetch_errors = 0

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_or_fetch(self, key: str, fetch_fn: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """
        Return the cached value for key, or fetch it.

        Args:
            key: Query signature
            fetch_fn: Zero-argument callable producing the value
            ttl: Entry lifetime in seconds (cache default if None)

        Raises:
            Whatever fetch_fn raised, for the fetching caller and every
            coalesced waiter. concurrent.futures.TimeoutError when a
            waiter gives up after inflight_wait_seconds.
        """
        ttl = ttl or self.ttl_seconds

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                self._hits += 1
                return entry.value

            inflight = self._inflight.get(key)
            if inflight is not None:
                self._coalesced += 1
                owner = False
            else:
                self._misses += 1
                inflight = _InFlight(future=Future(), started_at=self._clock())
                self._inflight[key] = inflight
                owner = True

        if not owner:
            return inflight.future.result(timeout=self.inflight_wait_seconds)

        try:
            value = fetch_fn()
        except Exception as e:
            with self._lock:
                self._fetch_errors += 1
                if self._inflight.get(key) is inflight:
                    del self._inflight[key]
            inflight.future.set_exception(e)
            raise

        with self._lock:
            registered = self._inflight.get(key) is inflight
            if registered:
                del self._inflight[key]
            if registered and not inflight.invalidated:
                self._entries[key] = CacheEntry(value=value, stored_at=self._clock(), ttl=ttl)
            else:
                logger.debug(f'Cache key {key} invalidated or swept during fetch, result not stored')

        inflight.future.set_result(value)
        return value

    def get_or_fetch_with_fallback(
        self,
        key: str,
        fetch_fn: Callable[[], Any],
        ttl: Optional[float] = None,
    ) -> CacheResult:
        """
        Like get_or_fetch(), but degrade to the last known value on failure.

        Re-raises only when no value was ever cached for key.
        """
        try:
            return CacheResult(value=self.get_or_fetch(key, fetch_fn, ttl))
        except Exception as e:
            with self._lock:
                entry = self._entries.get(key)
                if entry is None:
                    raise
                self._stale_served += 1
            logger.warning(f'Serving stale data for {key} after fetch error: {e}')
            return CacheResult(value=entry.value, stale=True, error=str(e))

    # -------------------------------------------------------------------------
    # Invalidation and cleanup
    # -------------------------------------------------------------------------

    def invalidate(self, prefix: str = '') -> int:
        """
        Mark every entry whose key starts with prefix as no longer fresh.

        Fetches for matching keys that are in flight right now still
        complete for their waiters but are not stored.

        Returns count of entries invalidated.
        """
        count = 0
        with self._lock:
            for key, entry in self._entries.items():
                if key.startswith(prefix) and not entry.invalidated:
                    entry.invalidated = True
                    count += 1
            for key, inflight in self._inflight.items():
                if key.startswith(prefix):
                    inflight.invalidated = True

        if count:
            logger.debug(f'Invalidated {count} cache entries matching {prefix!r}')
        return count

    def clear(self) -> None:
        """Drop every entry; outstanding fetches will not be stored."""
        with self._lock:
            self._entries.clear()
            for inflight in self._inflight.values():
                inflight.invalidated = True

    def sweep(self) -> int:
        """
        Remove entries older than twice their ttl and abandoned fetches.

        An in-flight registration older than inflight_max_age_seconds is
        dropped from the map so the next caller starts a fresh fetch; its
        current waiters keep waiting on the original future, whose result
        is then not stored.

        Returns count of entries and registrations removed.
        """
        now = self._clock()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if now - entry.stored_at > 2 * entry.ttl
            ]
            for key in expired:
                del self._entries[key]

            abandoned = [
                key for key, inflight in self._inflight.items()
                if now - inflight.started_at > self.inflight_max_age_seconds
            ]
            for key in abandoned:
                del self._inflight[key]

        for key in abandoned:
            logger.warning(f'Cleaned up stale in-flight request: {key}')
        if expired:
            logger.debug(f'Swept {len(expired)} expired cache entries')
        return len(expired) + len(abandoned)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweeper thread."""
        if self._sweeper and self._sweeper.is_alive():
            return

        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, daemon=True, name='cache-sweeper')
        self._sweeper.start()

    def stop(self) -> None:
        """Stop the sweeper thread."""
        self._stop_event.set()
        if self._sweeper:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    @property
    def stats(self) -> dict:
        """Get cache statistics."""
        with self._lock:
            lookups = self._hits + self._misses + self._coalesced
            return {
                'entries': len(self._entries),
                'in_flight': len(self._inflight),
                'hits': self._hits,
                'misses': self._misses,
                'coalesced': self._coalesced,
                'stale_served': self._stale_served,
                'fetch_errors': self._fetch_errors,
                'hit_rate': self._hits / lookups if lookups > 0 else 0,
            }
