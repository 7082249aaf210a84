import threading
import time

import pytest

from fleetwatch.cache import RequestCache


def _cache(clock, **kwargs) -> RequestCache:
    return RequestCache(ttl_seconds=30, clock=clock, **kwargs)


class _Counter:
    def __init__(self, value="fresh") -> None:
        self.calls = 0
        self.value = value

    def __call__(self):
        self.calls += 1
        return f"{self.value}-{self.calls}"


def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.005)


def test_value_served_from_cache_within_ttl(clock) -> None:
    cache = _cache(clock)
    fetch = _Counter()

    assert cache.get_or_fetch("vessels:active", fetch) == "fresh-1"
    clock.advance(29)
    assert cache.get_or_fetch("vessels:active", fetch) == "fresh-1"
    assert fetch.calls == 1


def test_value_refetched_after_ttl(clock) -> None:
    cache = _cache(clock)
    fetch = _Counter()

    cache.get_or_fetch("vessels:active", fetch)
    clock.advance(30)

    assert cache.get_or_fetch("vessels:active", fetch) == "fresh-2"
    assert fetch.calls == 2


def test_per_call_ttl_overrides_default(clock) -> None:
    cache = _cache(clock)
    fetch = _Counter()

    cache.get_or_fetch("positions:A:48h", fetch, ttl=120)
    clock.advance(100)

    assert cache.get_or_fetch("positions:A:48h", fetch, ttl=120) == "fresh-1"


def test_failed_fetch_is_not_cached(clock) -> None:
    cache = _cache(clock)
    calls = []

    def failing():
        calls.append(1)
        raise RuntimeError("store down")

    for _ in range(2):
        with pytest.raises(RuntimeError):
            cache.get_or_fetch("vessels:active", failing)

    assert len(calls) == 2
    assert cache.stats["entries"] == 0
    assert cache.stats["in_flight"] == 0


def test_concurrent_calls_share_one_fetch() -> None:
    cache = RequestCache(ttl_seconds=30)
    release = threading.Event()
    calls = []

    def slow_fetch():
        calls.append(1)
        release.wait(5)
        return ["A", "B"]

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(cache.get_or_fetch("vessels:active", slow_fetch)))
        for _ in range(8)
    ]
    for thread in threads:
        thread.start()

    _wait_for(lambda: cache.stats["misses"] + cache.stats["coalesced"] == 8)
    release.set()
    for thread in threads:
        thread.join(5)

    assert len(calls) == 1
    assert results == [["A", "B"]] * 8
    assert cache.stats["coalesced"] == 7


def test_coalesced_callers_all_see_the_failure() -> None:
    cache = RequestCache(ttl_seconds=30)
    release = threading.Event()
    calls = []

    def failing_fetch():
        calls.append(1)
        release.wait(5)
        raise ConnectionError("store unreachable")

    errors = []

    def call():
        try:
            cache.get_or_fetch("latest", failing_fetch)
        except ConnectionError as e:
            errors.append(e)

    threads = [threading.Thread(target=call) for _ in range(4)]
    for thread in threads:
        thread.start()

    _wait_for(lambda: cache.stats["misses"] + cache.stats["coalesced"] == 4)
    release.set()
    for thread in threads:
        thread.join(5)

    assert len(calls) == 1
    assert len(errors) == 4
    assert cache.stats["entries"] == 0


def test_invalidate_by_prefix(clock) -> None:
    cache = _cache(clock)
    fetch = _Counter()
    for key in ("positions:A:48h", "positions:B:48h", "vessels:active"):
        cache.get_or_fetch(key, fetch)

    assert cache.invalidate("positions:") == 2

    assert cache.get_or_fetch("vessels:active", fetch) == "fresh-3"
    assert cache.get_or_fetch("positions:A:48h", fetch) == "fresh-4"


def test_invalidation_during_fetch_prevents_caching() -> None:
    cache = RequestCache(ttl_seconds=30)
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow_fetch():
        calls.append(1)
        started.set()
        release.wait(5)
        return len(calls)

    worker = threading.Thread(target=cache.get_or_fetch, args=("timeline:48h", slow_fetch))
    worker.start()
    assert started.wait(5)

    cache.invalidate("timeline:")
    release.set()
    worker.join(5)

    assert cache.get_or_fetch("timeline:48h", slow_fetch) == 2
    assert len(calls) == 2


def test_fallback_serves_stale_value_after_failure(clock) -> None:
    cache = _cache(clock)
    cache.get_or_fetch("latest", lambda: ["cached"])
    clock.advance(45)

    def failing():
        raise TimeoutError("statement timeout")

    result = cache.get_or_fetch_with_fallback("latest", failing)

    assert result.value == ["cached"]
    assert result.stale is True
    assert "statement timeout" in result.error
    assert cache.stats["stale_served"] == 1


def test_fallback_uses_invalidated_entry(clock) -> None:
    cache = _cache(clock)
    cache.get_or_fetch("latest", lambda: ["cached"])
    cache.invalidate("latest")

    def failing():
        raise TimeoutError("statement timeout")

    assert cache.get_or_fetch_with_fallback("latest", failing).stale is True


def test_fallback_fresh_result_is_not_stale(clock) -> None:
    cache = _cache(clock)

    result = cache.get_or_fetch_with_fallback("latest", lambda: ["fresh"])

    assert result.value == ["fresh"]
    assert result.stale is False
    assert result.error is None


def test_fallback_raises_when_nothing_cached(clock) -> None:
    cache = _cache(clock)

    def failing():
        raise TimeoutError("statement timeout")

    with pytest.raises(TimeoutError):
        cache.get_or_fetch_with_fallback("latest", failing)


def test_sweep_removes_entries_older_than_twice_ttl(clock) -> None:
    cache = _cache(clock)
    cache.get_or_fetch("short", lambda: 1, ttl=10)
    cache.get_or_fetch("long", lambda: 2, ttl=100)
    clock.advance(25)

    removed = cache.sweep()

    assert removed == 1
    assert cache.stats["entries"] == 1


def test_sweep_drops_abandoned_in_flight_registration(clock) -> None:
    cache = _cache(clock, inflight_max_age_seconds=300)
    started = threading.Event()
    release = threading.Event()

    def stuck():
        started.set()
        release.wait(5)
        return "late"

    worker = threading.Thread(target=cache.get_or_fetch, args=("stuck", stuck))
    worker.start()
    assert started.wait(5)

    clock.advance(301)
    assert cache.sweep() == 1
    assert cache.get_or_fetch("stuck", lambda: "retried") == "retried"

    release.set()
    worker.join(5)
    assert cache.get_or_fetch("stuck", lambda: "again") == "retried"
    assert cache.stats["in_flight"] == 0


def test_clear(clock) -> None:
    cache = _cache(clock)
    cache.get_or_fetch("a", lambda: 1)

    cache.clear()

    assert cache.stats["entries"] == 0


def test_sweeper_thread_start_stop() -> None:
    cache = RequestCache(ttl_seconds=1, sweep_interval_seconds=0.01)
    cache.start()
    cache.start()
    cache.stop()

    assert cache._sweeper is None
