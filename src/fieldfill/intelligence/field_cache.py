"""
Bounded in-memory caches for detection results, storage reads and
hostname rule matches.

Each cache has a hard TTL (reads never extend it) and a maximum size
enforced with least-recently-accessed eviction. Expiry is checked when an
entry is read or when room is needed, never by a background sweep.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterator, TypeVar
import logging

from fieldfill.config import CoreConfig
from fieldfill.scheduling import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with access metadata."""
    data: T
    timestamp: float
    last_accessed: float
    hits: int = 0
    context: Any = None

    def is_expired(self, now_ms: float, timeout_ms: float) -> bool:
        """Check if this entry has outlived its TTL."""
        return now_ms - self.timestamp >= timeout_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "last_accessed": self.last_accessed,
            "hits": self.hits,
        }


@dataclass
class CacheStats:
    """Size snapshot of one cache."""
    size: int
    max_size: int
    timeout_ms: int

    def to_dict(self) -> dict[str, int]:
        return {"size": self.size, "max_size": self.max_size, "timeout_ms": self.timeout_ms}


class BoundedCache(Generic[T]):
    """
    Map with a hard TTL and a maximum entry count.

    Operations are plain dict operations gated by TTL and capacity checks;
    nothing here blocks or schedules work.
    """

    def __init__(
        self,
        name: str,
        max_size: int,
        timeout_ms: int,
        clock: Clock | None = None,
    ):
        """
        Initialize the cache.

        Args:
            name: Name used in logs and stats
            max_size: Maximum number of live entries
            timeout_ms: Time-to-live of every entry in milliseconds
            clock: Time source (defaults to the monotonic system clock)
        """
        if max_size < 1:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.name = name
        self.max_size = max_size
        self.timeout_ms = timeout_ms
        self.clock = clock or SystemClock()
        self._entries: dict[str, CacheEntry[T]] = {}
        self._evictions = 0
        self._expirations = 0

    def get(self, key: str) -> CacheEntry[T] | None:
        """
        Retrieve a live entry.

        Returns None when the key is missing or its TTL has elapsed; an
        expired entry is dropped on the way out.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self.clock.now_ms()
        if entry.is_expired(now, self.timeout_ms):
            del self._entries[key]
            self._expirations += 1
            return None

        entry.hits += 1
        entry.last_accessed = now
        return entry

    def put(self, key: str, data: T, context: Any = None) -> CacheEntry[T]:
        """
        Insert or overwrite an entry.

        At capacity, expired entries are dropped first; if the cache is
        still full the least recently accessed entry is evicted (ties go to
        the oldest insertion).
        """
        now = self.clock.now_ms()

        if key not in self._entries and len(self._entries) >= self.max_size:
            self._purge_expired(now)
            if len(self._entries) >= self.max_size:
                self._evict_one()

        entry = CacheEntry(data=data, timestamp=now, last_accessed=now, hits=0, context=context)
        self._entries[key] = entry
        return entry

    def invalidate(self, key: str) -> bool:
        """Remove a single entry. Returns True if it existed."""
        return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[str, CacheEntry[T]], bool]) -> int:
        """Remove every entry for which predicate(key, entry) is true."""
        doomed = [k for k, e in self._entries.items() if predicate(k, e)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        """Remove all entries."""
        self._entries.clear()

    def _purge_expired(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.is_expired(now, self.timeout_ms)]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)
        return len(expired)

    def _evict_one(self) -> None:
        victim = min(
            self._entries.items(),
            key=lambda item: (item[1].last_accessed, item[1].timestamp),
        )[0]
        del self._entries[victim]
        self._evictions += 1
        logger.debug(f"{self.name}: evicted {victim}")

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> Iterator[str]:
        return iter(list(self._entries))

    def stats(self) -> CacheStats:
        """Get cache statistics."""
        return CacheStats(size=len(self._entries), max_size=self.max_size, timeout_ms=self.timeout_ms)

    def counters(self) -> dict[str, int]:
        """Eviction and expiration counters for diagnostics."""
        return {"evictions": self._evictions, "expirations": self._expirations}


class CacheManager:
    """
    Owns the three process-wide caches.

    - field_cache: fingerprint -> DetectedField
    - storage_cache: "storage_type:key" -> last read value
    - url_pattern_cache: hostname -> SiteRule or None
    """

    def __init__(self, config: CoreConfig | None = None, clock: Clock | None = None):
        self.config = config or CoreConfig()
        self.clock = clock or SystemClock()
        self.field_cache: BoundedCache = BoundedCache(
            "field_cache",
            self.config.field_cache_max_size,
            self.config.field_cache_timeout_ms,
            self.clock,
        )
        self.storage_cache: BoundedCache = BoundedCache(
            "storage_cache",
            self.config.storage_cache_max_size,
            self.config.storage_cache_timeout_ms,
            self.clock,
        )
        self.url_pattern_cache: BoundedCache = BoundedCache(
            "url_pattern_cache",
            self.config.url_cache_max_size,
            self.config.url_cache_timeout_ms,
            self.clock,
        )

    @staticmethod
    def storage_key(key: str, storage_type: str) -> str:
        return f"{storage_type}:{key}"

    def invalidate_signature(self, signature: str) -> int:
        """Drop every cached detection whose element has this signature."""
        removed = self.field_cache.invalidate_where(
            lambda _key, entry: getattr(entry.data, "signature", None) == signature
        )
        if removed:
            logger.debug(f"Invalidated {removed} cached detections for signature {signature}")
        return removed

    def get_cache_stats(self) -> dict[str, dict[str, int]]:
        """Cache statistics for developer tooling."""
        return {
            "field_cache": self.field_cache.stats().to_dict(),
            "storage_cache": self.storage_cache.stats().to_dict(),
            "url_pattern_cache": self.url_pattern_cache.stats().to_dict(),
        }

    def clear_all(self) -> None:
        """Clear all caches."""
        self.field_cache.clear()
        self.storage_cache.clear()
        self.url_pattern_cache.clear()
