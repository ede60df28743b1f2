"""
Cache Store Service

Bounded in-memory cache for derived data (task lists, milestone
definitions, competency scores, recommendation lists).

Features:
- Per-entry TTL; expired entries are absent and removed on access or sweep
- Capacity-bounded eviction of the least recently accessed entries
- Durable Redis mirror for warm restarts (best-effort, never raises)
- Substring invalidation ("everything for customer X")
- Running hit/miss/eviction statistics
- Cancellable background sweep

Usage:
    store = CacheStore(capacity=50, default_ttl=300, mirror=DurableMirror(redis))

    tasks = store.get(CacheKeys.customer_tasks(customer_id, "growth"))
    if tasks is None:
        tasks = load_tasks(...)
        store.set(CacheKeys.customer_tasks(customer_id, "growth"), tasks, ttl.tasks)
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from core.cache import cache_key
from core.config import Settings, settings as default_settings
from services.durable_mirror import DurableMirror

logger = logging.getLogger(__name__)

_MISSING = object()


# =============================================================================
# KEYS AND TTLS
# =============================================================================

class CacheKeys:
    """Composite key builders: entity kind + customer id + discriminator."""

    @staticmethod
    def customer_tasks(customer_id: str, tier: str) -> str:
        return cache_key("tasks", customer_id, tier)

    @staticmethod
    def milestone_data(tier: str) -> str:
        return cache_key("milestone", tier)

    @staticmethod
    def competency_scores(customer_id: str) -> str:
        return cache_key("competency", customer_id)

    @staticmethod
    def task_progress(customer_id: str) -> str:
        return cache_key("progress", customer_id)

    @staticmethod
    def upcoming_tasks(tier: str) -> str:
        return cache_key("upcoming", tier)

    @staticmethod
    def catalog(tier: str) -> str:
        return cache_key("catalog", tier)

    @staticmethod
    def recommendations(customer_id: str, tier: str, completed_count: int) -> str:
        return cache_key("resource_recs", customer_id, tier, completed_count)


@dataclass(frozen=True)
class CacheTTL:
    """Per-kind cache durations in seconds."""
    default: float = 300
    tasks: float = 300
    milestones: float = 600
    competency: float = 120
    progress: float = 30
    recommendations: float = 600
    fallback: float = 60

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "CacheTTL":
        config = config or default_settings
        return cls(
            default=config.CACHE_TTL_DEFAULT,
            tasks=config.CACHE_TTL_TASKS,
            milestones=config.CACHE_TTL_MILESTONES,
            competency=config.CACHE_TTL_COMPETENCY,
            progress=config.CACHE_TTL_PROGRESS,
            recommendations=config.CACHE_TTL_RECOMMENDATIONS,
            fallback=config.CACHE_TTL_FALLBACK,
        )


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class CacheEntry:
    """A single cached value with its timing metadata."""
    key: str
    value: Any
    created_at: float
    last_accessed_at: float
    ttl: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        # Readable iff now - created_at < ttl
        return now - self.created_at >= self.ttl


@dataclass
class CacheStatistics:
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class CleanupHandle:
    """Stop handle for the background expiry sweep. stop() is idempotent."""

    def __init__(self, thread: threading.Thread, stop_event: threading.Event):
        self._thread = thread
        self._stop_event = stop_event

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop_event.is_set()

    def stop(self, timeout: Optional[float] = 1.0) -> None:
        self._stop_event.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)


# =============================================================================
# CACHE STORE
# =============================================================================

class CacheStore:
    """
    Bounded key -> entry mapping with TTL, LRU-style eviction and a
    durable mirror.

    One instance is built per process (see services.bootstrap) and passed
    to the components that need it.
    """

    def __init__(
        self,
        capacity: Optional[int] = None,
        default_ttl: Optional[float] = None,
        eviction_fraction: Optional[float] = None,
        mirror: Optional[DurableMirror] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.capacity = capacity if capacity is not None else default_settings.CACHE_CAPACITY
        self.default_ttl = (
            default_ttl if default_ttl is not None else default_settings.CACHE_TTL_DEFAULT
        )
        self.eviction_fraction = (
            eviction_fraction
            if eviction_fraction is not None
            else default_settings.CACHE_EVICTION_FRACTION
        )
        self.mirror = mirror or DurableMirror()
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._stats = CacheStatistics()
        self._lock = threading.RLock()

    # ========== Core operations ==========

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Insert or overwrite `key`. Evicts before inserting a new key at capacity."""
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            now = self._clock()
            if key not in self._entries:
                self._make_room(now)
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                last_accessed_at=now,
                ttl=ttl,
            )
        self.mirror.store_entry(key, value, created_at=now, ttl=ttl, now=now)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Return the cached value, or `default` when absent or expired.

        A primary miss falls back to the durable mirror; a recovered entry
        keeps its original created_at, so the logical TTL is not extended.
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None:
                entry = self._recover_from_mirror(key, now)

            if entry is None or entry.is_expired(now):
                self._stats.misses += 1
                if entry is not None:
                    self._remove(key)
                return default

            entry.access_count += 1
            entry.last_accessed_at = now
            self._stats.hits += 1
            return entry.value

    def delete(self, key: str) -> None:
        with self._lock:
            self._remove(key)

    def clear(self) -> None:
        """Drop every entry, reset statistics, and purge the mirror's cache records."""
        with self._lock:
            self._entries.clear()
            self._stats = CacheStatistics()
        self.mirror.clear_entries()

    def invalidate_by_prefix(self, fragment: str) -> int:
        """
        Delete every key containing `fragment` (substring match, so a
        customer id or tier name anywhere in the key qualifies).

        Returns the number of distinct keys removed from memory or mirror.
        """
        if not fragment:
            return 0
        with self._lock:
            doomed = [key for key in self._entries if fragment in key]
            for key in doomed:
                self._entries.pop(key, None)
                self.mirror.delete_entry(key)
        removed = set(doomed)
        removed.update(self.mirror.delete_matching(fragment))
        if removed:
            logger.info(f"Invalidated {len(removed)} cache entries matching '{fragment}'")
        return len(removed)

    def invalidate_customer(self, customer_id: str) -> int:
        return self.invalidate_by_prefix(str(customer_id))

    def invalidate_milestone(self, tier: str) -> int:
        return self.invalidate_by_prefix(str(tier))

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "hits": self._stats.hits,
                "misses": self._stats.misses,
                "evictions": self._stats.evictions,
                "size": len(self._entries),
                "hit_rate": self._stats.hit_rate,
                "mirror_enabled": self.mirror.enabled,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Peek at an entry's metadata without touching statistics."""
        with self._lock:
            return self._entries.get(key)

    # ========== Expiry sweep ==========

    def cleanup_expired_entries(self) -> int:
        """Remove all expired entries. Returns count removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key)
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    def start_background_cleanup(self, interval_s: Optional[float] = None) -> CleanupHandle:
        """Run cleanup_expired_entries every `interval_s` on a daemon thread."""
        interval = interval_s if interval_s is not None else default_settings.CACHE_SWEEP_INTERVAL_S
        stop_event = threading.Event()

        def _sweep() -> None:
            while not stop_event.wait(interval):
                try:
                    self.cleanup_expired_entries()
                except Exception as e:
                    logger.error(f"Cache sweep failed: {e}", exc_info=True)

        thread = threading.Thread(target=_sweep, name="cache-sweep", daemon=True)
        thread.start()
        return CleanupHandle(thread, stop_event)

    # ========== Higher-level helpers ==========

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Read-through: return the cached value or load, store and return it."""
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            logger.debug(f"Cache hit: {key}")
            return cached

        logger.debug(f"Cache miss: {key}")
        value = loader()
        self.set(key, value, ttl)
        return value

    def set_with_optimistic_update(
        self,
        key: str,
        value: Any,
        update: Optional[Callable[[Any], Any]] = None,
        ttl: Optional[float] = None,
    ) -> bool:
        """
        Cache `value` immediately, then push it upstream via `update`.

        If the update fails the entry is dropped so the next read refetches.
        Returns True when the update succeeded (or there was none).
        """
        self.set(key, value, ttl)
        if update is None:
            return True
        try:
            update(value)
            return True
        except Exception as e:
            logger.warning(f"Optimistic update failed for {key}, invalidating: {e}")
            self.delete(key)
            return False

    def preload_critical_data(
        self,
        customer_id: str,
        tier: str,
        loaders: Dict[str, Callable],
        ttl: Optional[CacheTTL] = None,
    ) -> int:
        """
        Warm the task, milestone and competency entries for a customer.

        `loaders` may contain "tasks" (customer_id, tier), "milestone" (tier)
        and "competency" (customer_id). Missing loaders and loader failures
        are skipped. Returns the number of data sets loaded.
        """
        ttl = ttl or CacheTTL.from_settings()
        plan = [
            ("tasks", CacheKeys.customer_tasks(customer_id, tier), (customer_id, tier), ttl.tasks),
            ("milestone", CacheKeys.milestone_data(tier), (tier,), ttl.milestones),
            ("competency", CacheKeys.competency_scores(customer_id), (customer_id,), ttl.competency),
        ]

        loaded = 0
        for name, key, args, duration in plan:
            loader = loaders.get(name)
            if loader is None or key in self:
                continue
            try:
                self.set(key, loader(*args), duration)
                loaded += 1
            except Exception as e:
                logger.warning(f"Failed to preload {name} for customer {customer_id}: {e}")

        logger.info(f"Preloaded {loaded} data sets for customer {customer_id}")
        return loaded

    # ========== Internal Methods ==========

    def _recover_from_mirror(self, key: str, now: float) -> Optional[CacheEntry]:
        record = self.mirror.load_entry(key)
        if record is None:
            return None
        self._make_room(now)
        entry = CacheEntry(
            key=key,
            value=record["value"],
            created_at=record["created_at"],
            last_accessed_at=now,
            ttl=record["ttl"],
        )
        self._entries[key] = entry
        return entry

    def _make_room(self, now: float) -> None:
        """Purge expired entries; if still at capacity, evict the least recently accessed."""
        if len(self._entries) < self.capacity:
            return

        for key in [k for k, e in self._entries.items() if e.is_expired(now)]:
            self._remove(key)

        if len(self._entries) < self.capacity:
            return

        to_remove = max(1, math.ceil(self.capacity * self.eviction_fraction))
        # sorted() is stable: ties keep insertion order
        oldest: List[CacheEntry] = sorted(
            self._entries.values(), key=lambda e: e.last_accessed_at
        )[:to_remove]
        for entry in oldest:
            self._remove(entry.key)
            self._stats.evictions += 1
        logger.debug(f"Evicted {len(oldest)} cache entries at capacity {self.capacity}")

    def _remove(self, key: str) -> None:
        self._entries.pop(key, None)
        self.mirror.delete_entry(key)
