"""
CacheStore - Async-compatible, byte-bounded cache with per-entry expiry.

Features:
- Memory-based store bounded by total serialized size
- Per-entry TTL with lazy expiry on read plus a periodic sweep
- True LRU eviction (least recently accessed first)
- Hit/miss accounting for hit-rate reporting
"""

import asyncio
import json
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Generic, TypeVar

from loguru import logger

from outbound.services.errors import EntryTooLargeError

T = TypeVar("T")

DEFAULT_MAX_BYTES = 100 * 1024 * 1024


def serialized_size(value: Any) -> int:
    """Size in bytes of the compact JSON form of ``value``."""
    encoded = json.dumps(value, default=str, ensure_ascii=False, separators=(",", ":"))
    return len(encoded.encode("utf-8"))


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    key: str
    value: T
    created_at: datetime
    expires_at: datetime
    size_bytes: int
    access_count: int = 0
    last_accessed_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.last_accessed_at is None:
            self.last_accessed_at = self.created_at

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.created_at

    def is_expired(self, now: datetime) -> bool:
        """Check if entry is past its TTL."""
        return now >= self.expires_at

    def remaining(self, now: datetime) -> timedelta:
        return max(self.expires_at - now, timedelta(0))

    def remaining_fraction(self, now: datetime) -> float:
        """Share of the original TTL still left, in [0, 1]."""
        total = self.ttl.total_seconds()
        if total <= 0:
            return 0.0
        return self.remaining(now).total_seconds() / total


@dataclass
class CacheResult(Generic[T]):
    """Result from cache lookup."""

    value: T
    created_at: datetime
    expires_at: datetime


@dataclass
class CacheStats:
    """Cache statistics."""

    entries: int = 0
    total_bytes: int = 0
    max_bytes: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expired: int = 0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entries": self.entries,
            "total_bytes": self.total_bytes,
            "max_bytes": self.max_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expired": self.expired,
            "hit_rate": self.hit_rate,
            "oldest_entry": self.oldest_entry.isoformat() if self.oldest_entry else None,
            "newest_entry": self.newest_entry.isoformat() if self.newest_entry else None,
        }


class CacheStore:
    """
    Byte-bounded async cache with TTL and LRU eviction.

    Entries are kept in access order so eviction only touches the
    entries it removes.

    Usage:
        cache = CacheStore(max_bytes=10 * 1024 * 1024)

        result = await cache.get("search:typescript")
        if result:
            return result.value

        data = await fetch_data()
        await cache.set("search:typescript", data, ttl=timedelta(hours=1))
    """

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_BYTES,
        default_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self._entries: OrderedDict[str, CacheEntry[Any]] = OrderedDict()
        self._max_bytes = max_bytes
        self._default_ttl = default_ttl
        self._clock = clock
        self._debug = debug
        self._total_bytes = 0
        self._lock = asyncio.Lock()
        self._stats = CacheStats()

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> CacheResult[Any] | None:
        """
        Get value from cache.

        Returns CacheResult if found and fresh, None otherwise. Expired
        entries are removed on the way out.
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key[:50]}")
                return None

            now = self._clock()
            if entry.is_expired(now):
                self._remove(key)
                self._stats.misses += 1
                self._stats.expired += 1
                self._log(f"EXPIRED: {key[:50]}")
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            self._stats.hits += 1
            self._log(f"HIT: {key[:50]}")

            return CacheResult(
                value=entry.value,
                created_at=entry.created_at,
                expires_at=entry.expires_at,
            )

    async def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: JSON-serializable data to cache
            ttl: Time to live (uses default if not specified)

        Raises:
            EntryTooLargeError: If the entry alone exceeds the cache capacity
        """
        if ttl is None:
            ttl = self._default_ttl
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        size = serialized_size(value)
        if size > self._max_bytes:
            raise EntryTooLargeError(size, self._max_bytes)

        async with self._lock:
            if key in self._entries:
                self._remove(key)

            self._evict_for(size)

            now = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=now + ttl,
                size_bytes=size,
            )
            self._total_bytes += size
            self._log(f"SET: {key[:50]} ({size} bytes, TTL: {ttl.total_seconds()}s)")

    async def delete(self, key: str) -> bool:
        """Delete a specific key from cache."""
        async with self._lock:
            if key in self._entries:
                self._remove(key)
                self._log(f"DELETE: {key[:50]}")
                return True
            return False

    async def has(self, key: str) -> bool:
        """Check for a fresh entry without touching access metadata."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self._remove(key)
                self._stats.expired += 1
                return False
            return True

    async def clear(self) -> None:
        """Clear all cache entries and counters."""
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._total_bytes = 0
            self._stats = CacheStats()
            self._log(f"CLEAR: {count} entries removed")

    async def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        async with self._lock:
            now = self._clock()
            expired_keys = [k for k, v in self._entries.items() if v.is_expired(now)]
            for key in expired_keys:
                self._remove(key)

            self._stats.expired += len(expired_keys)
            if expired_keys:
                logger.info(f"Cache cleanup: removed {len(expired_keys)} expired entries")

            return len(expired_keys)

    def peek(self, key: str) -> CacheEntry[Any] | None:
        """Entry metadata without counting a hit or refreshing recency."""
        return self._entries.get(key)

    def entries(self) -> list[CacheEntry[Any]]:
        """Snapshot of current entries, least recently used first."""
        return list(self._entries.values())

    def stats(self) -> CacheStats:
        """Snapshot of cache statistics."""
        created = [e.created_at for e in self._entries.values()]
        return replace(
            self._stats,
            entries=len(self._entries),
            total_bytes=self._total_bytes,
            max_bytes=self._max_bytes,
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
        )

    def _evict_for(self, required: int) -> None:
        """Evict least recently used entries until ``required`` bytes fit."""
        evicted = 0
        freed = 0
        while self._entries and self._total_bytes + required > self._max_bytes:
            key, entry = self._entries.popitem(last=False)
            self._total_bytes -= entry.size_bytes
            freed += entry.size_bytes
            evicted += 1
            self._log(f"EVICT: {key[:50]}")

        if evicted:
            self._stats.evictions += evicted
            logger.info(f"Cache eviction: removed {evicted} entries to free {freed} bytes")

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._total_bytes -= entry.size_bytes

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")
