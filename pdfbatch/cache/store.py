"""In-memory cache service with per-category TTLs and single-flight fetches.

One ``CacheStore`` is built at application startup and handed to the route
handlers through a FastAPI dependency. Entries live in per-category
namespaces, each with its own default TTL. Expired entries are treated as
absent on read and physically removed by ``purge_expired()``, which the
optional background sweep calls periodically.

Concurrent ``get_or_fetch`` calls for the same ``(category, key)`` share a
single in-flight fetch: only the first caller runs the fetch function, the
others await the same future and receive the same value (or the same error).
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class CacheCategory:
    DOCUMENTS = "documents"
    METRICS = "metrics"
    USER_CONFIG = "user_config"
    API_STATUS = "api_status"
    GENERAL = "general"
    BATCH_JOBS = "batch_jobs"


# Default TTL per category, in seconds
DEFAULT_TTLS: Dict[str, float] = {
    CacheCategory.DOCUMENTS: 300,
    CacheCategory.METRICS: 900,
    CacheCategory.USER_CONFIG: 600,
    CacheCategory.API_STATUS: 120,
    CacheCategory.GENERAL: 600,
    CacheCategory.BATCH_JOBS: 60,
}


def generate_cache_key(prefix: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Build a composite key that does not depend on parameter order.

    ``None`` values are skipped so that an omitted filter and an explicit
    ``None`` map to the same entry.
    """
    params = params or {}
    parts = [f"{k}={params[k]}" for k in sorted(params) if params[k] is not None]
    if not parts:
        return prefix
    return f"{prefix}:{'&'.join(parts)}"


@dataclass
class _Entry:
    value: Any
    expires_at: float


class _Category:
    """Entries and counters for one namespace."""

    def __init__(self, name: str, default_ttl: float, max_entries: Optional[int] = None):
        self.name = name
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.evictions = 0


class CacheStore:
    """Categorised TTL cache with single-flight de-duplication."""

    def __init__(
        self,
        ttls: Optional[Dict[str, float]] = None,
        max_entries: Optional[Dict[str, int]] = None,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ):
        ttls = ttls if ttls is not None else DEFAULT_TTLS
        max_entries = max_entries or {}
        self._categories: Dict[str, _Category] = {
            name: _Category(name, ttl, max_entries.get(name)) for name, ttl in ttls.items()
        }
        self._in_flight: Dict[Tuple[str, str], "asyncio.Future[Any]"] = {}
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the periodic sweep of expired entries."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.purge_expired()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    def categories(self):
        return list(self._categories)

    def _category(self, name: str) -> _Category:
        try:
            return self._categories[name]
        except KeyError:
            raise ValueError(f"Unknown cache category: {name}") from None

    def _live_entry(self, cat: _Category, key: str) -> Optional[_Entry]:
        entry = cat.entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del cat.entries[key]
            return None
        cat.entries.move_to_end(key)
        return entry

    def get(self, category: str, key: str) -> Optional[Any]:
        """Return the cached value, or ``None`` on a miss or expiry."""
        cat = self._category(category)
        entry = self._live_entry(cat, key)
        if entry is None:
            cat.misses += 1
            logger.debug("Cache miss: %s:%s", category, key)
            return None
        cat.hits += 1
        return entry.value

    def set(self, category: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value``, overwriting any previous entry and resetting its expiry."""
        cat = self._category(category)
        ttl = cat.default_ttl if ttl is None else ttl
        cat.entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)
        cat.entries.move_to_end(key)
        cat.sets += 1
        if cat.max_entries is not None:
            while len(cat.entries) > cat.max_entries:
                cat.entries.popitem(last=False)
                cat.evictions += 1

    async def get_or_fetch(
        self,
        category: str,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value or fetch, store and return it.

        Concurrent callers for the same ``(category, key)`` share one fetch.
        A failed fetch is not cached; its exception reaches every waiter.
        """
        if category not in self._categories:
            logger.warning("Unknown cache category %s, fetching without cache", category)
            return await fetch_fn()

        flight_key = (category, key)
        pending = self._in_flight.get(flight_key)
        if pending is not None:
            logger.debug("Awaiting in-flight fetch: %s:%s", category, key)
            return await asyncio.shield(pending)

        cat = self._categories[category]
        entry = self._live_entry(cat, key)
        if entry is not None:
            cat.hits += 1
            return entry.value
        cat.misses += 1

        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._in_flight[flight_key] = future
        try:
            value = await fetch_fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so a fetch with no concurrent waiters does not
            # trigger "exception was never retrieved" warnings.
            future.exception()
            raise
        else:
            self.set(category, key, value, ttl)
            future.set_result(value)
            return value
        finally:
            self._in_flight.pop(flight_key, None)

    def delete(self, category: str, key: str) -> int:
        cat = self._category(category)
        return 1 if cat.entries.pop(key, None) is not None else 0

    def invalidate(self, category: str, key: Optional[str] = None) -> int:
        """Drop one key, or the whole category when ``key`` is omitted."""
        if key is not None:
            return self.delete(category, key)
        cat = self._category(category)
        removed = len(cat.entries)
        cat.entries.clear()
        if removed:
            logger.debug("Invalidated %d entries in cache category %s", removed, category)
        return removed

    def invalidate_by_pattern(self, category: str, pattern: str) -> int:
        """Drop every key in ``category`` that contains ``pattern``."""
        cat = self._category(category)
        matching = [k for k in cat.entries if pattern in k]
        for k in matching:
            del cat.entries[k]
        if matching:
            logger.debug("Invalidated %d entries matching %s:%s", len(matching), category, pattern)
        return len(matching)

    def clear(self, category: Optional[str] = None) -> None:
        names = [category] if category else list(self._categories)
        for name in names:
            self._category(name).entries.clear()

    def purge_expired(self) -> int:
        """Physically remove expired entries. Returns how many were removed."""
        now = self._clock()
        removed = 0
        for cat in self._categories.values():
            expired = [k for k, e in cat.entries.items() if e.expires_at <= now]
            for k in expired:
                del cat.entries[k]
            removed += len(expired)
        return removed

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def _category_stats(self, cat: _Category) -> Dict[str, Any]:
        now = self._clock()
        return {
            "hit_count": cat.hits,
            "miss_count": cat.misses,
            "set_count": cat.sets,
            "eviction_count": cat.evictions,
            "key_count": sum(1 for e in cat.entries.values() if e.expires_at > now),
            "in_flight": sum(1 for (c, _) in self._in_flight if c == cat.name),
            "default_ttl": cat.default_ttl,
        }

    def stats(self, category: Optional[str] = None) -> Dict[str, Any]:
        """Counters for one category, or a mapping of all categories."""
        if category is not None:
            return {"category": category, **self._category_stats(self._category(category))}
        return {name: self._category_stats(cat) for name, cat in self._categories.items()}
