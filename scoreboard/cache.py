"""
Two-tier cache for the scoreboard service.

Tier 1 is a bounded in-process map with TTLs and least-frequently-used
eviction. Tier 2 is a remote key-value store shared between processes.
Reads go tier 1 -> tier 2 -> miss; a tier-2 hit is copied back into tier 1
with a short "hot" TTL. Writes go to both tiers.

The cache is never a correctness dependency: tier-2 failures are logged,
counted and absorbed, and the cache keeps working from tier 1 alone.
"""

import fnmatch
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from .codec import Codec, JsonCodec, decode_payload, frame_text
from .errors import CacheUnavailable
from .logging_utils import get_logger
from .remote import RemoteStore

logger = get_logger("scoreboard.cache")

V = TypeVar("V")

INDEX_PREFIX = "keyindex:"
NAMESPACE_REGISTRY = INDEX_PREFIX + "__namespaces__"


class CacheKeys:
    """Key catalogue shared by every read path."""
    RANKING_GLOBAL = "ranking:global"
    RANKING_WEEKLY = "ranking:weekly"
    RANK_PATTERN = "rank:*"

    @staticmethod
    def device_stats(device_id: str) -> str:
        return f"stats:{device_id}"

    @staticmethod
    def device_rank(device_id: str) -> str:
        return f"rank:{device_id}"

    @staticmethod
    def history(device_id: str, limit: int, offset: int) -> str:
        return f"history:{device_id}:{limit}:{offset}"

    @staticmethod
    def history_pattern(device_id: str) -> str:
        return f"history:{device_id}:*"

    @staticmethod
    def rate_limit(key: str) -> str:
        return f"limit:{key}"


def namespace_of(key: str) -> str:
    return key.split(":", 1)[0]


def _has_glob(text: str) -> bool:
    return any(ch in text for ch in "*?[")


@dataclass
class CacheEntry:
    """A single tier-1 entry with value, absolute expiry and hit counter"""
    value: Any
    expires_at: float
    created_at: float
    hit_count: int = 0


class MemoryCache:
    """Thread-safe in-memory cache with TTL support and LFU eviction"""

    def __init__(self, max_entries: int = 1000, clock: Callable[[], float] = time.time):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self.max_entries = max_entries
        self._stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'evictions': 0
        }

    def get(self, key: str) -> Optional[Any]:
        """Get a value from cache, return None if not found or expired"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None

            if self._clock() >= entry.expires_at:
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None

            entry.hit_count += 1
            self._stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float = 3600) -> None:
        """Set a value in cache with TTL in seconds"""
        with self._lock:
            now = self._clock()
            self._cache[key] = CacheEntry(
                value=value,
                expires_at=now + ttl_seconds,
                created_at=now,
            )
            self._stats['sets'] += 1
            if len(self._cache) > self.max_entries:
                self._evict_least_used(exclude=key)

    def delete(self, key: str) -> bool:
        """Delete a key from cache, return True if existed"""
        with self._lock:
            return self._cache.pop(key, None) is not None

    def delete_matching(self, pattern: str) -> List[str]:
        """Delete every key matching a glob pattern, return the removed keys"""
        with self._lock:
            matched = [key for key in self._cache if fnmatch.fnmatchcase(key, pattern)]
            for key in matched:
                del self._cache[key]
            return matched

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._cache)

    def hit_count(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._cache.get(key)
            return entry.hit_count if entry else None

    def clear(self) -> None:
        """Clear all cache entries"""
        with self._lock:
            evicted = len(self._cache)
            self._cache.clear()
            self._stats['evictions'] += evicted

    def cleanup_expired(self) -> int:
        """Remove all expired entries, return count of removed entries"""
        with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._cache.items()
                if now >= entry.expires_at
            ]
            for key in expired_keys:
                del self._cache[key]
            self._stats['evictions'] += len(expired_keys)
            return len(expired_keys)

    def evict_to_capacity(self) -> int:
        """Evict lowest-hit entries until within max_entries, return count evicted"""
        with self._lock:
            return self._evict_least_used()

    def _evict_least_used(self, exclude: Optional[str] = None) -> int:
        # caller holds the lock
        overflow = len(self._cache) - self.max_entries
        if overflow <= 0:
            return 0
        candidates = sorted(
            (key for key in self._cache if key != exclude),
            key=lambda k: self._cache[k].hit_count,
        )
        victims = candidates[:overflow]
        for key in victims:
            del self._cache[key]
        self._stats['evictions'] += len(victims)
        return len(victims)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self._stats,
                'cache_size': len(self._cache),
                'max_entries': self.max_entries,
            }


class TieredCache(Generic[V]):
    """Read-through / write-through cache over a MemoryCache and an optional RemoteStore.

    ``None`` is the "absent" value: storing ``None`` is indistinguishable
    from a miss.
    """

    def __init__(
        self,
        remote: Optional[RemoteStore] = None,
        codec: Optional[Codec] = None,
        *,
        default_ttl: int = 3600,
        hot_ttl: int = 60,
        max_entries: int = 1000,
        sweep_interval: float = 60.0,
        compress: bool = True,
        compression_threshold: int = 1024,
        memory_only_ok: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.memory = MemoryCache(max_entries=max_entries, clock=clock)
        self.remote = remote
        self.codec: Codec = codec or JsonCodec()
        self.default_ttl = default_ttl
        self.hot_ttl = hot_ttl
        self.compress = compress
        self.compression_threshold = compression_threshold
        self.memory_only_ok = memory_only_ok
        self.sweep_interval = sweep_interval

        self._stats_lock = threading.Lock()
        self._stats = {
            'hits': 0,
            'memory_hits': 0,
            'remote_hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0,
        }
        self._degraded = False
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if sweep_interval and sweep_interval > 0:
            self.start_sweeper()

    # -- counters / tier-2 health ------------------------------------------

    def _count(self, *names: str) -> None:
        with self._stats_lock:
            for name in names:
                self._stats[name] += 1

    def _remote_failed(self, op: str, key: str, exc: Exception) -> None:
        self._count('errors')
        if not self._degraded:
            self._degraded = True
            logger.warning(
                "cache_remote_degraded",
                extra={"event": op, "key": key, "error": str(exc)},
            )
        else:
            logger.debug("cache_remote_error", extra={"event": op, "key": key, "error": str(exc)})

    def _remote_ok(self) -> None:
        if self._degraded:
            self._degraded = False
            logger.info("cache_remote_recovered")

    # -- public API ----------------------------------------------------------

    def get(self, key: str) -> Optional[V]:
        value = self.memory.get(key)
        if value is not None:
            self._count('hits', 'memory_hits')
            return value

        if self.remote is not None:
            payload = None
            try:
                payload = self.remote.get(key)
                self._remote_ok()
            except CacheUnavailable as exc:
                self._remote_failed("get", key, exc)

            if payload is not None:
                try:
                    value = decode_payload(payload, self.codec)
                except ValueError as exc:
                    self._count('errors')
                    logger.warning("cache_decode_failed", extra={"key": key, "error": str(exc)})
                    value = None
                if value is not None:
                    self.memory.set(key, value, self.hot_ttl)
                    self._count('hits', 'remote_hits')
                    return value

        self._count('misses')
        return None

    def set(self, key: str, value: V, ttl_seconds: Optional[int] = None) -> bool:
        """Write to both tiers. Returns False when tier 2 did not take the write.

        Tier 1 keeps the codec round-trip of ``value``, not the object itself,
        so a read returns the same thing whichever tier answers.
        """
        try:
            text = self.codec.dumps(value)
            stored = self.codec.loads(text)
        except (TypeError, ValueError) as exc:
            self._count('errors')
            logger.warning("cache_encode_failed", extra={"key": key, "error": str(exc)})
            return False

        self.memory.set(key, stored, ttl_seconds or self.default_ttl)
        self._count('sets')
        if self.remote is None:
            return True

        payload = frame_text(text, self.compress, self.compression_threshold)
        try:
            self.remote.set(key, payload, ttl_seconds)
            self._index(key)
            self._remote_ok()
            return True
        except CacheUnavailable as exc:
            self._remote_failed("set", key, exc)
            return False

    def delete(self, key: str) -> bool:
        existed = self.memory.delete(key)
        self._count('deletes')
        if self.remote is None:
            return existed
        try:
            removed = self.remote.delete(key)
            self.remote.index_remove(INDEX_PREFIX + namespace_of(key), [key])
            self._remote_ok()
            return existed or removed > 0
        except CacheUnavailable as exc:
            self._remote_failed("delete", key, exc)
            return existed

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern from both tiers.

        Tier 2 is never scanned: candidate keys come from the per-namespace
        key index maintained by ``set``.
        """
        removed = set(self.memory.delete_matching(pattern))
        self._count('deletes')
        if self.remote is not None:
            try:
                removed.update(self._delete_pattern_remote(pattern))
                self._remote_ok()
            except CacheUnavailable as exc:
                self._remote_failed("delete_pattern", pattern, exc)
        logger.debug("cache_delete_pattern", extra={"pattern": pattern, "removed": len(removed)})
        return len(removed)

    def _delete_pattern_remote(self, pattern: str) -> List[str]:
        ns_pattern = namespace_of(pattern)
        if _has_glob(ns_pattern):
            registry = self.remote.index_members(NAMESPACE_REGISTRY)
            namespaces = [ns for ns in registry if fnmatch.fnmatchcase(ns, ns_pattern)]
        else:
            namespaces = [ns_pattern]

        removed: List[str] = []
        for ns in namespaces:
            index = INDEX_PREFIX + ns
            matched = [k for k in self.remote.index_members(index) if fnmatch.fnmatchcase(k, pattern)]
            if matched:
                self.remote.delete(*matched)
                self.remote.index_remove(index, matched)
                removed.extend(matched)
        return removed

    def _index(self, key: str) -> None:
        ns = namespace_of(key)
        self.remote.index_add(INDEX_PREFIX + ns, key)
        self.remote.index_add(NAMESPACE_REGISTRY, ns)

    def remote_connected(self) -> bool:
        if self.remote is None:
            return False
        try:
            self.remote.ping()
        except CacheUnavailable as exc:
            self._remote_failed("ping", "", exc)
            return False
        self._remote_ok()
        return True

    def is_available(self) -> bool:
        """True when tier 2 answers, or when tier-1-only operation is allowed."""
        return self.remote_connected() or self.memory_only_ok

    def mode(self) -> str:
        if self.remote_connected():
            return "tiered"
        if self.memory_only_ok:
            return "memory_only"
        return "unavailable"

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        total_requests = stats['hits'] + stats['misses']
        hit_rate = (stats['hits'] / total_requests * 100) if total_requests > 0 else 0
        memory = self.memory.get_stats()
        connected = self.remote_connected()
        if connected:
            mode = "tiered"
        else:
            mode = "memory_only" if self.memory_only_ok else "unavailable"
        return {
            **stats,
            'total_requests': total_requests,
            'hit_rate_percent': round(hit_rate, 2),
            'evictions': memory['evictions'],
            'cache_size': memory['cache_size'],
            'max_entries': memory['max_entries'],
            'remote_configured': self.remote is not None,
            'remote_connected': connected,
            'mode': mode,
        }

    # -- tier-1 maintenance ------------------------------------------------

    def sweep(self) -> int:
        """Drop expired tier-1 entries, then LFU-evict down to capacity.

        Also prunes tier-2 key indexes of keys that expired on their own.
        Returns the number of tier-1 entries removed.
        """
        expired = self.memory.cleanup_expired()
        evicted = self.memory.evict_to_capacity()
        if expired or evicted:
            logger.debug("cache_sweep", extra={"removed": expired + evicted})
        self.prune_index()
        return expired + evicted

    def prune_index(self) -> int:
        """Remove index members whose keys no longer exist in tier 2."""
        if self.remote is None:
            return 0
        try:
            namespaces = self.remote.index_members(NAMESPACE_REGISTRY)
            pruned = sum(self.remote.index_prune(INDEX_PREFIX + ns) for ns in namespaces)
            self._remote_ok()
        except CacheUnavailable as exc:
            self._remote_failed("prune_index", NAMESPACE_REGISTRY, exc)
            return 0
        if pruned:
            logger.debug("cache_index_pruned", extra={"removed": pruned})
        return pruned

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("cache_sweep_failed")

    def start_sweeper(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="cache-sweeper", daemon=True)
        self._sweeper.start()

    def sweeper_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def close(self) -> None:
        """Stop the sweeper. The remote client is owned by whoever created it."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
