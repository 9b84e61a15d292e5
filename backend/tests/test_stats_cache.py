import asyncio
import logging
import time

import pytest

from app.analytics import fallback_snapshot
from app.stats_cache import StatsCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _fallback(key):
    return {"key": key, "value": 0}


def test_fresh_entry_is_served_without_new_aggregation():
    calls = []

    async def aggregator(key):
        calls.append(key)
        return {"key": key, "value": len(calls)}

    async def scenario():
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=60)
        assert await cache.refresh("a") is True
        first = cache.get("a")
        second = cache.get("a")
        assert not cache.is_refreshing("a")
        return first, second

    first, second = asyncio.run(scenario())

    assert first == {"key": "a", "value": 1}
    assert first is second
    assert calls == ["a"]


def test_cold_get_returns_complete_fallback_without_waiting():
    release = None

    async def slow_aggregator(key):
        await release.wait()
        return {"unused": True}

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        cache = StatsCache("analytics", slow_aggregator, fallback_snapshot, freshness_seconds=900)
        started = time.perf_counter()
        snapshot = cache.get("analytics")
        elapsed = time.perf_counter() - started
        refreshing = cache.is_refreshing("analytics")
        await cache.aclose()
        return snapshot, elapsed, refreshing

    snapshot, elapsed, refreshing = asyncio.run(scenario())

    assert elapsed < 0.01
    assert refreshing is True
    assert set(snapshot) == {
        "user_stats",
        "medication_stats",
        "content_stats",
        "health_stats",
        "engagement_stats",
        "timestamp",
    }
    assert snapshot["user_stats"]["total_users"] == 0
    assert snapshot["health_stats"]["glucose_readings"] == {"total": 0, "average": 0, "min": 0, "max": 0}
    assert snapshot["engagement_stats"]["daily_activity"] == []


def test_concurrent_stale_gets_start_a_single_refresh():
    clock = FakeClock()
    started = []
    release = None

    async def aggregator(key):
        started.append(key)
        if len(started) > 1:
            await release.wait()
        return {"key": key, "value": len(started)}

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=10, clock=clock)
        await cache.refresh("a")
        clock.advance(11)

        async def caller():
            return cache.get("a")

        results = await asyncio.gather(*(caller() for _ in range(20)))
        await asyncio.sleep(0)
        in_flight = cache.is_refreshing("a")
        release.set()
        await cache.refresh("a")
        return results, in_flight, cache.get("a")

    results, in_flight, latest = asyncio.run(scenario())

    assert all(result == {"key": "a", "value": 1} for result in results)
    assert in_flight is True
    assert started == ["a", "a"]
    assert latest == {"key": "a", "value": 2}


def test_get_never_blocks_on_slow_aggregator():
    clock = FakeClock()
    calls = []

    async def aggregator(key):
        calls.append(key)
        if len(calls) > 1:
            await asyncio.sleep(5)
        return {"value": len(calls)}

    async def scenario():
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=1, refresh_timeout_seconds=30, clock=clock)
        await cache.refresh("a")
        clock.advance(2)
        durations = []
        for _ in range(5):
            started = time.perf_counter()
            cache.get("a")
            durations.append(time.perf_counter() - started)
            await asyncio.sleep(0)
        await cache.aclose()
        return durations

    durations = asyncio.run(scenario())

    assert max(durations) < 0.01
    assert len(calls) == 2


def test_failed_refresh_keeps_stale_snapshot():
    clock = FakeClock()
    outcomes = iter(["ok", "error"])

    async def aggregator(key):
        if next(outcomes) == "error":
            raise RuntimeError("database unavailable")
        return {"value": "S1"}

    async def scenario():
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=10, clock=clock)
        await cache.refresh("a")
        clock.advance(20)
        stale = cache.get("a")
        refreshed = await cache.refresh("a")
        return stale, refreshed, cache.get("a"), cache.stats()

    stale, refreshed, after, stats = asyncio.run(scenario())

    assert stale == {"value": "S1"}
    assert refreshed is False
    assert after == {"value": "S1"}
    assert stats["refresh_failures"] == 1
    assert stats["refresh_successes"] == 1


def test_timed_out_refresh_keeps_stale_snapshot_and_frees_slot():
    clock = FakeClock()
    calls = []

    async def aggregator(key):
        calls.append(key)
        if len(calls) > 1:
            await asyncio.sleep(10)
        return {"value": "S1"}

    async def scenario():
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=10, refresh_timeout_seconds=0.05, clock=clock)
        await cache.refresh("a")
        clock.advance(20)
        cache.get("a")
        refreshed = await cache.refresh("a")
        return refreshed, cache.is_refreshing("a"), cache.entry("a").snapshot

    refreshed, refreshing, snapshot = asyncio.run(scenario())

    assert refreshed is False
    assert refreshing is False
    assert snapshot == {"value": "S1"}


def test_stale_while_revalidate_timeline():
    calls = []

    async def aggregator(key):
        calls.append(key)
        if len(calls) == 1:
            await asyncio.sleep(0.02)
            return {"snapshot": "S1"}
        await asyncio.sleep(60)
        return {"snapshot": "never"}

    async def scenario():
        cache = StatsCache(
            "timeline",
            aggregator,
            lambda key: {"snapshot": "F0"},
            freshness_seconds=0.1,
            refresh_timeout_seconds=0.1,
        )
        at_0 = cache.get("a")
        await asyncio.sleep(0.06)
        at_60 = cache.get("a")
        await asyncio.sleep(0.14)
        at_200 = cache.get("a")
        second_refresh_started = cache.is_refreshing("a")
        await asyncio.sleep(0.3)
        at_500 = cache.get("a")
        await cache.aclose()
        return at_0, at_60, at_200, second_refresh_started, at_500

    at_0, at_60, at_200, second_refresh_started, at_500 = asyncio.run(scenario())

    assert at_0 == {"snapshot": "F0"}
    assert at_60 == {"snapshot": "S1"}
    assert at_200 == {"snapshot": "S1"}
    assert second_refresh_started is True
    assert at_500 == {"snapshot": "S1"}


def test_simultaneous_cold_gets_share_fallback_and_one_refresh():
    started = []
    release = None

    async def aggregator(key):
        started.append(key)
        await release.wait()
        return {"real": True}

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=60)

        async def caller():
            return cache.get("b")

        first, second = await asyncio.gather(caller(), caller())
        await asyncio.sleep(0)
        release.set()
        await cache.refresh("b")
        return first, second, cache.get("b")

    first, second, latest = asyncio.run(scenario())

    assert first is second
    assert first == {"key": "b", "value": 0}
    assert started == ["b"]
    assert latest == {"real": True}


def test_fallback_entry_retries_refresh_on_next_get():
    calls = []

    async def aggregator(key):
        calls.append(key)
        if len(calls) == 1:
            raise RuntimeError("first attempt fails")
        return {"value": "real"}

    async def scenario():
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=60)
        first = cache.get("a")
        await cache.refresh("a")
        second = cache.get("a")
        await cache.refresh("a")
        return first, second, cache.get("a")

    first, second, third = asyncio.run(scenario())

    assert first == second == {"key": "a", "value": 0}
    assert third == {"value": "real"}
    assert len(calls) == 2


def test_fetch_waits_for_real_data_on_cold_start():
    async def aggregator(key):
        await asyncio.sleep(0.01)
        return {"rows": [key]}

    async def scenario():
        cache = StatsCache("listing", aggregator, _fallback, freshness_seconds=60)
        return await cache.fetch("users?page=1"), cache.entry("users?page=1").fallback

    snapshot, is_fallback = asyncio.run(scenario())

    assert snapshot == {"rows": ["users?page=1"]}
    assert is_fallback is False


def test_fetch_serves_fallback_when_cold_refresh_fails():
    async def aggregator(key):
        raise RuntimeError("boom")

    async def scenario():
        cache = StatsCache("listing", aggregator, _fallback, freshness_seconds=60)
        snapshot = await cache.fetch("k")
        return snapshot, cache.entry("k").fallback

    snapshot, is_fallback = asyncio.run(scenario())

    assert snapshot == {"key": "k", "value": 0}
    assert is_fallback is True


def test_fetch_gives_up_after_sync_timeout_but_refresh_continues():
    release = None

    async def aggregator(key):
        await release.wait()
        return {"value": "late"}

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        cache = StatsCache("listing", aggregator, _fallback, freshness_seconds=60, sync_timeout_seconds=0.05)
        snapshot = await cache.fetch("k")
        still_refreshing = cache.is_refreshing("k")
        release.set()
        await cache.refresh("k")
        return snapshot, still_refreshing, cache.get("k")

    snapshot, still_refreshing, latest = asyncio.run(scenario())

    assert snapshot == {"key": "k", "value": 0}
    assert still_refreshing is True
    assert latest == {"value": "late"}


def test_clear_discards_result_of_abandoned_refresh():
    release = None

    async def aggregator(key):
        await release.wait()
        return {"value": "old"}

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=60)
        cache.get("a")
        await asyncio.sleep(0)
        cache.clear()
        release.set()
        await asyncio.sleep(0.01)
        return cache.entry("a"), cache.keys()

    entry, keys = asyncio.run(scenario())

    assert entry is None
    assert keys == []


def test_stored_snapshot_is_isolated_from_aggregator_mutation():
    produced = {"items": [1, 2]}

    async def aggregator(key):
        return produced

    async def scenario():
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=60)
        await cache.refresh("a")
        produced["items"].append(3)
        return cache.get("a")

    assert asyncio.run(scenario()) == {"items": [1, 2]}


def test_empty_key_is_rejected():
    async def aggregator(key):
        return {}

    async def scenario():
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=60)
        cache.get("")

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_idle_entries_are_evicted_after_configured_age():
    clock = FakeClock()

    async def aggregator(key):
        return {"key": key}

    async def scenario():
        cache = StatsCache("listing", aggregator, _fallback, freshness_seconds=10, evict_after_seconds=100, clock=clock)
        for key in ("search=a", "search=b", "search=c"):
            await cache.fetch(key)
        clock.advance(60)
        await cache.fetch("search=c")
        await cache.refresh("search=c")
        clock.advance(60)
        latest = await cache.fetch("search=c")
        return cache.keys(), cache.stats(), latest

    keys, stats, latest = asyncio.run(scenario())

    assert keys == ["search=c"]
    assert stats["evictions"] == 2
    assert latest == {"key": "search=c"}


def test_entries_are_kept_without_eviction_age():
    clock = FakeClock()

    async def aggregator(key):
        return {"key": key}

    async def scenario():
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=10, clock=clock)
        await cache.fetch("a")
        clock.advance(10_000)
        cache.get("b")
        await cache.aclose()
        return cache.stats()["evictions"]

    assert asyncio.run(scenario()) == 0


class ServiceUnavailable(Exception):
    pass


def test_expected_refresh_errors_are_logged_without_traceback(caplog):
    async def aggregator(key):
        raise ServiceUnavailable("backend not configured")

    async def scenario():
        cache = StatsCache(
            "test",
            aggregator,
            _fallback,
            freshness_seconds=60,
            expected_errors=(ServiceUnavailable,),
        )
        refreshed = await cache.refresh("a")
        return refreshed, cache.stats()["refresh_failures"]

    with caplog.at_level(logging.WARNING, logger="sugar.cache"):
        refreshed, failures = asyncio.run(scenario())

    records = [record for record in caplog.records if record.name == "sugar.cache"]
    assert refreshed is False
    assert failures == 1
    assert [record.levelno for record in records] == [logging.WARNING]
    assert records[0].exc_info is None
    assert "backend not configured" in records[0].getMessage()


def test_unexpected_refresh_errors_keep_traceback(caplog):
    async def aggregator(key):
        raise RuntimeError("query failed")

    async def scenario():
        cache = StatsCache("test", aggregator, _fallback, freshness_seconds=60, expected_errors=(ServiceUnavailable,))
        await cache.refresh("a")

    with caplog.at_level(logging.WARNING, logger="sugar.cache"):
        asyncio.run(scenario())

    errors = [record for record in caplog.records if record.name == "sugar.cache" and record.levelno == logging.ERROR]
    assert len(errors) == 1
    assert errors[0].exc_info is not None
