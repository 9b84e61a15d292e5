"""In-memory stale-while-revalidate cache for statistics snapshots.

A ``StatsCache`` answers ``get(key)`` without ever awaiting the aggregator:

- fresh entry: returned as is
- stale entry: returned as is, and a background refresh is started
- no entry: a fallback snapshot is stored and returned, and a background
  refresh is started

At most one refresh runs per key. The in-flight check and the task
registration happen with no ``await`` in between, so on a single event loop
two callers can never both start a refresh for the same key. A refresh that
fails or times out leaves the previous entry untouched.

With ``evict_after_seconds`` set, entries not refreshed for that long are
dropped on the next read, so caches keyed by free-form queries stay bounded
by recent traffic.
"""

from __future__ import annotations

import asyncio
import logging
import time
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("sugar.cache")

Aggregator = Callable[[str], Awaitable[Any]]
FallbackFactory = Callable[[str], Any]

_MISSING = object()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    snapshot: Any
    stored_at: float
    fallback: bool = False


class StatsCache:
    def __init__(
        self,
        name: str,
        aggregator: Aggregator,
        fallback: FallbackFactory,
        *,
        freshness_seconds: float,
        refresh_timeout_seconds: float = 8.0,
        sync_timeout_seconds: float = 30.0,
        evict_after_seconds: Optional[float] = None,
        expected_errors: tuple[type[Exception], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if fallback is None:
            raise ValueError("a fallback factory is required")
        self.name = name
        self.freshness_seconds = float(freshness_seconds)
        self.refresh_timeout_seconds = float(refresh_timeout_seconds)
        self.sync_timeout_seconds = float(sync_timeout_seconds)
        self.evict_after_seconds = evict_after_seconds
        self._expected_errors = expected_errors
        self._aggregator = aggregator
        self._fallback = fallback
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._hits = 0
        self._stale_hits = 0
        self._misses = 0
        self._refresh_successes = 0
        self._refresh_failures = 0
        self._evictions = 0

    # --- reads ---

    def get(self, key: str) -> Any:
        """Return the snapshot for *key* immediately.

        Must be called from inside a running event loop, since a cache miss
        or a stale entry schedules a refresh task on it.
        """
        if not key:
            raise ValueError("cache key must be non-empty")

        self._evict_expired()
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            self._hits += 1
            return entry.snapshot

        if entry is None:
            self._misses += 1
            entry = self._store_fallback(key)
        else:
            self._stale_hits += 1

        self._ensure_refresh(key)
        return entry.snapshot

    async def fetch(self, key: str) -> Any:
        """Like :meth:`get`, but wait for real data on a true cold start.

        The wait is bounded by ``sync_timeout_seconds``; past that, or if the
        refresh fails, the fallback snapshot is stored and returned.
        """
        self._evict_expired()
        if key in self._entries:
            return self.get(key)

        self._misses += 1
        task = self._ensure_refresh(key)
        try:
            await asyncio.wait_for(self._join(task), timeout=self.sync_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Cache %s gave up waiting for %r after %.1fs; serving fallback",
                self.name,
                key,
                self.sync_timeout_seconds,
            )

        entry = self._entries.get(key)
        if entry is None:
            entry = self._store_fallback(key)
        return entry.snapshot

    async def refresh(self, key: str) -> bool:
        """Run a refresh for *key* now, or join the one already running."""
        return await self._join(self._ensure_refresh(key))

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def keys(self) -> list[str]:
        return list(self._entries)

    def is_refreshing(self, key: str) -> bool:
        return key in self._inflight

    def is_fresh(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._is_fresh(entry)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        entries = [
            {
                "key": entry.key,
                "age_seconds": round(max(0.0, now - entry.stored_at), 3),
                "fresh": self._is_fresh(entry),
                "fallback": entry.fallback,
                "refreshing": entry.key in self._inflight,
            }
            for entry in self._entries.values()
        ]
        return {
            "name": self.name,
            "freshness_seconds": self.freshness_seconds,
            "hits": self._hits,
            "stale_hits": self._stale_hits,
            "misses": self._misses,
            "refresh_successes": self._refresh_successes,
            "refresh_failures": self._refresh_failures,
            "evictions": self._evictions,
            "entries": entries,
        }

    # --- lifecycle ---

    def clear(self) -> None:
        """Drop every entry and abandon in-flight refreshes."""
        for task in self._inflight.values():
            task.cancel()
        self._inflight.clear()
        self._entries.clear()

    async def aclose(self) -> None:
        tasks = list(self._inflight.values())
        self.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- internals ---

    def _is_fresh(self, entry: CacheEntry) -> bool:
        # Fallback entries are placeholders, so they never count as fresh.
        if entry.fallback:
            return False
        return (self._clock() - entry.stored_at) < self.freshness_seconds

    def _store(self, key: str, snapshot: Any, *, fallback: bool) -> CacheEntry:
        entry = CacheEntry(key=key, snapshot=deepcopy(snapshot), stored_at=self._clock(), fallback=fallback)
        self._entries[key] = entry
        return entry

    def _store_fallback(self, key: str) -> CacheEntry:
        return self._store(key, self._fallback(key), fallback=True)

    def _evict_expired(self) -> None:
        if self.evict_after_seconds is None:
            return
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.stored_at >= self.evict_after_seconds and key not in self._inflight
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            self._evictions += len(expired)
            logger.debug("Cache %s evicted %d idle entries", self.name, len(expired))

    def _ensure_refresh(self, key: str) -> asyncio.Task:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._run_refresh(key),
                name=f"{self.name}-refresh:{key}",
            )
            self._inflight[key] = task
        return task

    def _release(self, key: str, task: Optional[asyncio.Task]) -> bool:
        if self._inflight.get(key) is task:
            del self._inflight[key]
            return True
        return False

    async def _join(self, task: asyncio.Task) -> bool:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return False
            raise

    async def _run_refresh(self, key: str) -> bool:
        task = asyncio.current_task()
        start = time.monotonic()
        snapshot = _MISSING
        try:
            snapshot = await asyncio.wait_for(self._aggregator(key), timeout=self.refresh_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Cache %s refresh for %r timed out after %.1fs",
                self.name,
                key,
                self.refresh_timeout_seconds,
            )
        except self._expected_errors as exc:
            logger.warning("Cache %s refresh for %r skipped: %s", self.name, key, exc)
        except Exception:
            logger.exception("Cache %s refresh for %r failed", self.name, key)
        finally:
            owned = self._release(key, task)

        duration_ms = int((time.monotonic() - start) * 1000)
        if snapshot is _MISSING:
            self._refresh_failures += 1
            return False
        if not owned:
            logger.info("Cache %s discarded abandoned refresh for %r", self.name, key)
            return False

        self._store(key, snapshot, fallback=False)
        self._refresh_successes += 1
        logger.info("Cache %s refreshed %r duration_ms=%d", self.name, key, duration_ms)
        return True
