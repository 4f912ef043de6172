"""
Schema caching layer.

Provides an in-memory TTL cache for introspected table schemas, keyed by
table name and detail level, so the agent's schema lookups do not hit the
catalog on every call.

Concurrent misses for the same key collapse into one in-flight fetch: the
first caller runs the loader, later callers wait on its future.  An expired
entry is served while its refresh is running.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable

from sql_gateway.core.logging import get_logger

logger = get_logger(__name__)


# ── Configuration ───────────────────────────────────────

DEFAULT_TTL_SECONDS = 300  # 5 minutes
DEFAULT_MAX_SIZE = 256


# ── Cache entry ─────────────────────────────────────────


@dataclass
class CacheEntry:
    """A single cached schema."""
    key: str
    value: Any
    created_at: float
    ttl: float
    hit_count: int = 0

    @property
    def is_expired(self) -> bool:
        return (time.time() - self.created_at) > self.ttl


# ── Cache implementation ────────────────────────────────


class SchemaCache:
    """Thread-safe in-memory TTL cache with single-flight loading.

    Parameters
    ----------
    ttl : float
        Time-to-live in seconds for each entry.
    max_size : int
        Maximum number of entries. Oldest entries are evicted when full.
    """

    def __init__(self, ttl: float = DEFAULT_TTL_SECONDS, max_size: int = DEFAULT_MAX_SIZE):
        self._store: dict[str, CacheEntry] = {}
        self._inflight: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._ttl = ttl
        self._max_size = max_size
        self._hits = 0
        self._misses = 0
        self._loads = 0

    # ── Public API ──────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Retrieve a cached value, or ``None`` on miss / expiry."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None or entry.is_expired:
                self._misses += 1
                return None
            entry.hit_count += 1
            self._hits += 1
            logger.debug("Schema cache HIT key=%s hits=%d", key, entry.hit_count)
            return entry.value

    def put(self, key: str, value: Any) -> None:
        """Store a value in the cache."""
        with self._lock:
            self._put_locked(key, value)
        logger.debug("Schema cache PUT key=%s size=%d", key, len(self._store))

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        """Return the cached value for *key*, running *loader* at most once per refresh."""
        with self._lock:
            entry = self._store.get(key)
            if entry is not None and not entry.is_expired:
                entry.hit_count += 1
                self._hits += 1
                return entry.value
            self._misses += 1
            future = self._inflight.get(key)
            if future is not None:
                if entry is not None:
                    return entry.value  # stale while another caller refreshes
                owner = False
            else:
                future = Future()
                self._inflight[key] = future
                owner = True

        if not owner:
            return future.result()

        try:
            value = loader()
        except Exception as exc:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(exc)
            raise
        with self._lock:
            self._loads += 1
            self._put_locked(key, value)
            self._inflight.pop(key, None)
        future.set_result(value)
        return value

    def invalidate(self, key: str | None = None) -> int:
        """Remove one entry or flush all. Returns number of entries removed."""
        with self._lock:
            if key is None:
                count = len(self._store)
                self._store.clear()
                return count
            return 1 if self._store.pop(key, None) is not None else 0

    def stats(self) -> dict[str, Any]:
        """Return cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._store),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
                "loads": self._loads,
                "hit_rate": round(self._hits / total, 3) if total else 0.0,
            }

    # ── Internals ───────────────────────────────────────

    def _put_locked(self, key: str, value: Any) -> None:
        # Evict oldest if at capacity
        if len(self._store) >= self._max_size and key not in self._store:
            self._evict_oldest()
        self._store[key] = CacheEntry(key=key, value=value, created_at=time.time(), ttl=self._ttl)

    def _evict_oldest(self) -> None:
        """Remove the entry with the earliest creation time."""
        if not self._store:
            return
        oldest_key = min(self._store, key=lambda k: self._store[k].created_at)
        del self._store[oldest_key]

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count removed."""
        with self._lock:
            expired = [k for k, v in self._store.items() if v.is_expired]
            for k in expired:
                del self._store[k]
            return len(expired)
