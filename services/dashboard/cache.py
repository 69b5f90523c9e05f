"""
TTL cache for dashboard views.

Entries are keyed by ``(project_id, view, params)``. Expired entries stay
readable through ``get_stale`` so a slow recompute can fall back to them;
``get`` only ever returns fresh data. Values are copied on the way in and out.
"""

import asyncio
import copy
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

import structlog

logger = structlog.get_logger()

CacheKey = Tuple[str, str, Tuple[Tuple[str, Hashable], ...]]


def make_key(project_id: str, view: str, params: Optional[Dict[str, Hashable]] = None) -> CacheKey:
    return project_id, view, tuple(sorted((params or {}).items()))


class DashboardCache:
    """
    In-memory TTL cache with statistics and in-flight recompute tracking.

    Features:
    - Fresh reads within ``ttl_seconds``; stale reads on request
    - Oldest-first eviction past ``max_entries``
    - Per-project invalidation
    - At most one recompute task per key
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize dashboard cache

        Args:
            ttl_seconds: Time-to-live for entries
            max_entries: Maximum entries kept before evicting the oldest
            clock: Monotonic time source
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock

        self._entries: Dict[CacheKey, Tuple[Any, float]] = {}
        self._inflight: Dict[CacheKey, asyncio.Task] = {}
        self._lock = threading.RLock()

        self.stats = {
            'hits': 0,
            'misses': 0,
            'stale_hits': 0,
            'evictions': 0,
            'invalidations': 0,
        }

        self.logger = logger.bind(component="dashboard_cache")

    def _age(self, stored_at: float) -> float:
        return self.clock() - stored_at

    def get(self, key: CacheKey) -> Optional[Any]:
        """Fresh value for ``key`` or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._age(entry[1]) > self.ttl_seconds:
                self.stats['misses'] += 1
                return None
            self.stats['hits'] += 1
            return copy.deepcopy(entry[0])

    def get_stale(self, key: CacheKey) -> Optional[Tuple[Any, float]]:
        """Value for ``key`` regardless of age, with its age in seconds."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self.stats['stale_hits'] += 1
            return copy.deepcopy(entry[0]), self._age(entry[1])

    def set(self, key: CacheKey, value: Any) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_oldest()
            self._entries[key] = (copy.deepcopy(value), self.clock())

    def _evict_oldest(self) -> None:
        oldest = min(self._entries, key=lambda k: self._entries[k][1])
        del self._entries[oldest]
        self.stats['evictions'] += 1

    def clear(self, project_id: Optional[str] = None) -> int:
        """Drop every entry, or only those for one project. Returns entries removed."""
        with self._lock:
            if project_id is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                keys = [k for k in self._entries if k[0] == project_id]
                for k in keys:
                    del self._entries[k]
                removed = len(keys)
            self.stats['invalidations'] += removed

        self.logger.info("cache_cleared", scope=project_id or "all", entries=removed)
        return removed

    def inflight(self, key: CacheKey) -> Optional[asyncio.Task]:
        with self._lock:
            task = self._inflight.get(key)
            return task if task is not None and not task.done() else None

    def track(self, key: CacheKey, task: asyncio.Task) -> None:
        with self._lock:
            self._inflight[key] = task
        task.add_done_callback(lambda _: self._untrack(key, task))

    def _untrack(self, key: CacheKey, task: asyncio.Task) -> None:
        with self._lock:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_requests = self.stats['hits'] + self.stats['misses']
            return {
                **self.stats,
                'entries': len(self._entries),
                'inflight': sum(1 for t in self._inflight.values() if not t.done()),
                'hit_rate': self.stats['hits'] / total_requests if total_requests > 0 else 0,
                'ttl_seconds': self.ttl_seconds,
            }
