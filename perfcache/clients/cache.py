"""In-memory TTL cache with LRU eviction, statistics, and export/import."""

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from perfcache.clock import Clock, now_ms
from perfcache.models.cache import (
    AccessCount,
    CacheCounters,
    CacheEntryRecord,
    CacheSnapshot,
    CacheStats,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_SIZE = 1000
DEFAULT_TTL_MS = 900_000  # 15 minutes
CLEANUP_INTERVAL_MS = 300_000  # 5 minutes
ENTRY_OVERHEAD_BYTES = 64

_MISSING: Any = object()


class CacheClosedError(RuntimeError):
    """Raised when a cache is used after ``destroy()``."""


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    data: T
    expiry: int
    access_count: int
    last_accessed: int
    created: int
    size_bytes: int = 0


def estimate_size(key: str, data: object) -> int:
    """Rough memory estimate: UTF-16 key + serialised value + fixed overhead."""
    try:
        serialised = json.dumps(data, default=str)
    except (TypeError, ValueError):
        serialised = repr(data)
    return len(key) * 2 + len(serialised) * 2 + ENTRY_OVERHEAD_BYTES


def _pattern_to_regex(pattern: str) -> re.Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


class EnhancedCache:
    """TTL-based cache with LRU eviction and hit/miss statistics.

    Entries expire ``ttl_ms`` milliseconds after they are set. Expired
    entries are dropped lazily when looked up and proactively by a
    background sweep that runs every ``cleanup_interval_ms`` on the event
    loop. When the cache is full, inserting a new key evicts the entry with
    the oldest ``last_accessed`` time.

    Args:
        max_size: Maximum number of entries before eviction.
        default_ttl_ms: TTL used when ``set`` is called without one.
        cleanup_interval_ms: Period of the background expiry sweep.
        single_flight: Share one in-flight fetch between concurrent
            ``get_or_set`` calls for the same key.
        clock: Callable returning epoch milliseconds.
        name: Label used in log messages.

    Raises:
        ValueError: If *max_size*, *default_ttl_ms* or *cleanup_interval_ms*
            is not positive.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        *,
        cleanup_interval_ms: int = CLEANUP_INTERVAL_MS,
        single_flight: bool = False,
        clock: Clock = now_ms,
        name: str = "cache",
    ) -> None:
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        if default_ttl_ms <= 0:
            raise ValueError(f"default_ttl_ms must be positive, got {default_ttl_ms}")
        if cleanup_interval_ms <= 0:
            raise ValueError(
                f"cleanup_interval_ms must be positive, got {cleanup_interval_ms}"
            )

        self.name = name
        self.max_size = max_size
        self.default_ttl_ms = default_ttl_ms
        self.cleanup_interval_ms = cleanup_interval_ms
        self.single_flight = single_flight
        self._clock = clock

        self._entries: dict[str, CacheEntry[Any]] = {}
        self._counters = CacheCounters()
        self._memory_usage = 0
        self._inflight: dict[str, asyncio.Future[Any]] = {}
        self._cleanup_task: asyncio.Task[None] | None = None
        self._closed = False

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Cache '%s' created outside an event loop; sweep deferred", name)
        else:
            self.start_cleanup_timer()

    # ── Core operations ──────────────────────────────────────────────────

    def get(self, key: str, default: T | None = None) -> T | None:
        """Return the cached value for *key*, or *default* if absent or expired."""
        value = self._lookup(key)
        return default if value is _MISSING else value

    def set(self, key: str, data: object, ttl_ms: int | None = None) -> None:
        """Store *data* under *key*, evicting the LRU entry if at capacity.

        Raises:
            ValueError: If *ttl_ms* is given and not positive.
        """
        self._check_open()
        now = self._clock()
        expiry = now + self._resolve_ttl(ttl_ms)

        if key in self._entries:
            self._remove(key)
        elif len(self._entries) >= self.max_size:
            self._evict_lru()

        size = estimate_size(key, data)
        self._entries[key] = CacheEntry(
            data=data,
            expiry=expiry,
            access_count=1,
            last_accessed=now,
            created=now,
            size_bytes=size,
        )
        self._memory_usage += size
        self._counters.sets += 1

    def has(self, key: str) -> bool:
        """Return True if *key* is present and unexpired. No counter effect."""
        self._check_open()
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._clock() > entry.expiry:
            self._remove(key)
            return False
        return True

    def delete(self, key: str) -> bool:
        """Remove *key*. Returns True if the key existed."""
        if key in self._entries:
            self._remove(key)
            return True
        return False

    def clear(self) -> None:
        """Remove all entries and reset the counters."""
        self._entries.clear()
        self._memory_usage = 0
        self._counters = CacheCounters()

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl_ms: int | None = None,
    ) -> T:
        """Return the cached value, or await *fetcher*, cache and return its result.

        Errors raised by *fetcher* propagate unchanged and nothing is cached.
        Unless the cache was built with ``single_flight=True``, concurrent
        calls for the same cold key each run *fetcher*.
        """
        cached = self._lookup(key)
        if cached is not _MISSING:
            return cached

        if not self.single_flight:
            data = await fetcher()
            self.set(key, data, ttl_ms)
            return data

        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch_and_store(key, fetcher, ttl_ms))
            self._inflight[key] = pending
            pending.add_done_callback(lambda fut: self._forget_inflight(key, fut))
        return await asyncio.shield(pending)

    # ── Batch and query helpers ──────────────────────────────────────────

    def mget(self, keys: Iterable[str]) -> list[Any]:
        """Batch ``get``; absent keys map to None."""
        return [self.get(key) for key in keys]

    def mset(self, items: Iterable[tuple[str, object] | tuple[str, object, int | None]]) -> None:
        """Batch ``set`` from ``(key, data)`` or ``(key, data, ttl_ms)`` tuples."""
        for item in items:
            self.set(*item)

    def keys(self, pattern: str | None = None) -> list[str]:
        """List stored keys, optionally filtered by a ``*`` wildcard pattern.

        Keys are not filtered by expiry: entries that expired but have not
        been swept yet are still listed. The pattern matches anywhere in the
        key, so ``"stock-*"`` also matches ``"old-stock-1"``.
        """
        if not pattern:
            return list(self._entries)
        regex = _pattern_to_regex(pattern)
        return [key for key in self._entries if regex.search(key)]

    def get_expiring_items(self, within_ms: int) -> list[str]:
        """Keys whose expiry falls within the next *within_ms* milliseconds."""
        cutoff = self._clock() + within_ms
        return [key for key, entry in self._entries.items() if entry.expiry <= cutoff]

    def touch(self, key: str, ttl_ms: int | None = None) -> bool:
        """Extend the TTL of *key* and mark it as recently used.

        Returns False if the key is absent or already expired.
        """
        self._check_open()
        ttl = self._resolve_ttl(ttl_ms)
        entry = self._entries.get(key)
        if entry is None:
            return False
        now = self._clock()
        if now > entry.expiry:
            self._remove(key)
            return False
        entry.expiry = now + ttl
        entry.last_accessed = now
        return True

    def get_most_accessed(self, limit: int = 10) -> list[AccessCount]:
        ranked = sorted(
            self._entries.items(), key=lambda item: item[1].access_count, reverse=True
        )
        return [
            AccessCount(key=key, access_count=entry.access_count)
            for key, entry in ranked[:limit]
        ]

    def get_stats(self) -> CacheStats:
        oldest: int | None = None
        newest: int | None = None
        for entry in self._entries.values():
            if oldest is None or entry.created < oldest:
                oldest = entry.created
            if newest is None or entry.created > newest:
                newest = entry.created

        counters = self._counters
        total = counters.hits + counters.misses
        return CacheStats(
            total_items=len(self._entries),
            total_hits=counters.hits,
            total_misses=counters.misses,
            hit_rate=counters.hits / total if total else 0.0,
            memory_usage=self._memory_usage,
            sets=counters.sets,
            evictions=counters.evictions,
            oldest_item=oldest,
            newest_item=newest,
        )

    @property
    def size(self) -> int:
        """Current number of entries (expired-but-unswept included)."""
        return len(self._entries)

    @property
    def counters(self) -> CacheCounters:
        return self._counters.model_copy()

    # ── Export / import ──────────────────────────────────────────────────

    def export_data(self) -> CacheSnapshot:
        """Snapshot all entries and counters."""
        entries = [
            CacheEntryRecord(
                key=key,
                data=entry.data,
                expiry=entry.expiry,
                access_count=entry.access_count,
                last_accessed=entry.last_accessed,
                created=entry.created,
            )
            for key, entry in self._entries.items()
        ]
        return CacheSnapshot(
            entries=entries,
            counters=self._counters.model_copy(),
            export_time=datetime.now(UTC),
        )

    def import_data(self, snapshot: CacheSnapshot | dict[str, Any]) -> None:
        """Replace the cache contents with the unexpired entries of *snapshot*.

        At most ``max_size`` entries are kept, preferring the most recently
        accessed ones.
        """
        self._check_open()
        if not isinstance(snapshot, CacheSnapshot):
            snapshot = CacheSnapshot.model_validate(snapshot)

        self.clear()
        now = self._clock()
        survivors = [record for record in snapshot.entries if record.expiry >= now]
        if len(survivors) > self.max_size:
            keep = sorted(survivors, key=lambda r: r.last_accessed, reverse=True)
            kept_keys = {record.key for record in keep[: self.max_size]}
            survivors = [record for record in survivors if record.key in kept_keys]

        for record in survivors:
            size = estimate_size(record.key, record.data)
            self._entries[record.key] = CacheEntry(
                data=record.data,
                expiry=record.expiry,
                access_count=record.access_count,
                last_accessed=record.last_accessed,
                created=record.created,
                size_bytes=size,
            )
            self._memory_usage += size

        self._counters = snapshot.counters.model_copy()
        logger.info("Cache '%s' imported %d items", self.name, len(self._entries))

    # ── Expiry sweep ─────────────────────────────────────────────────────

    def cleanup_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expiry]
        for key in expired:
            self._remove(key)
        if expired:
            logger.info("Cache '%s' cleanup removed %d expired items", self.name, len(expired))
        return len(expired)

    def start_cleanup_timer(self) -> None:
        """Start the periodic expiry sweep on the running event loop.

        Raises:
            RuntimeError: If called without a running event loop.
        """
        self._check_open()
        if self.cleanup_running:
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(
            self._cleanup_loop(), name=f"cache-cleanup-{self.name}"
        )

    def stop_cleanup_timer(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def destroy(self) -> None:
        """Stop the sweep and empty the cache. The instance is unusable afterwards."""
        self.stop_cleanup_timer()
        self.clear()
        self._closed = True

    # ── Internals ────────────────────────────────────────────────────────

    def _lookup(self, key: str) -> Any:
        self._check_open()
        entry = self._entries.get(key)
        if entry is None:
            self._counters.misses += 1
            return _MISSING

        now = self._clock()
        if now > entry.expiry:
            self._remove(key)
            self._counters.misses += 1
            return _MISSING

        entry.access_count += 1
        entry.last_accessed = now
        self._counters.hits += 1
        return entry.data

    def _resolve_ttl(self, ttl_ms: int | None) -> int:
        if ttl_ms is None:
            return self.default_ttl_ms
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be positive, got {ttl_ms}")
        return ttl_ms

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._memory_usage -= entry.size_bytes

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        lru_key = min(self._entries, key=lambda k: self._entries[k].last_accessed)
        self._remove(lru_key)
        self._counters.evictions += 1
        logger.debug("Cache '%s' evicted '%s'", self.name, lru_key)

    async def _fetch_and_store(
        self, key: str, fetcher: Callable[[], Awaitable[T]], ttl_ms: int | None
    ) -> T:
        data = await fetcher()
        self.set(key, data, ttl_ms)
        return data

    def _forget_inflight(self, key: str, fut: asyncio.Future[Any]) -> None:
        if self._inflight.get(key) is fut:
            del self._inflight[key]

    async def _cleanup_loop(self) -> None:
        interval = self.cleanup_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.cleanup_expired()

    def _check_open(self) -> None:
        if self._closed:
            raise CacheClosedError(f"Cache '{self.name}' has been destroyed")
