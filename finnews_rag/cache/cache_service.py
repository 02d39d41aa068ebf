"""
Two-Tier Cache Service

A chain of cache backends, consulted in order:
1. Redis (shared across processes)
2. Bounded in-memory map (per-process fallback)

Every backend fails open: an error is logged and treated as a miss, so the
cache is never a correctness dependency.
"""

import re
import json
import time
import fnmatch
import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

from .cache_keys import discover_list_key, today_utc, ALL_TOPICS

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300
MEMORY_CACHE_MAX_SIZE = 100
SCAN_COUNT = 100


class MemoryCacheBackend:
    """
    Bounded in-process cache.

    Entries store serialized JSON with their own expiry. When full, the
    oldest inserted entry is evicted (insertion order, not LRU). Expired
    entries are evicted lazily on read.
    """

    name = 'memory'

    def __init__(
        self,
        max_size: int = MEMORY_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.time
    ):
        self.max_size = max_size
        self._clock = clock
        self._entries: 'OrderedDict[str, Tuple[str, float]]' = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            data, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return data

    def set(self, key: str, data: str, ttl: int) -> None:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                oldest_key, _ = self._entries.popitem(last=False)
                logger.debug(f"Memory cache full, evicted {oldest_key}")
            self._entries[key] = (data, self._clock() + ttl)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def delete_pattern(self, pattern: str) -> int:
        regex = re.compile(fnmatch.translate(pattern))
        with self._lock:
            matched = [key for key in self._entries if regex.match(key)]
            for key in matched:
                del self._entries[key]
        return len(matched)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        return {'size': len(self._entries), 'max_size': self.max_size}


class RedisCacheBackend:
    """Redis-backed cache tier."""

    name = 'redis'

    def __init__(self, client: 'redis.Redis'):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisCacheBackend':
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, data: str, ttl: int) -> None:
        self.client.set(key, data, ex=ttl)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self.client.delete(*keys)

    def delete_pattern(self, pattern: str) -> int:
        """Delete matching keys with a cursor-paginated SCAN."""
        removed = 0
        cursor = 0
        while True:
            cursor, keys = self.client.scan(cursor=cursor, match=pattern, count=SCAN_COUNT)
            if keys:
                removed += self.client.delete(*keys)
                logger.info(f"Redis DEL pattern {pattern}: {len(keys)} keys")
            if int(cursor) == 0:
                break
        return removed

    def stats(self) -> Dict[str, Any]:
        return {'connected': True, 'key_count': self.client.dbsize()}


class CacheService:
    """
    Ordered chain of cache backends with write-through semantics.

    get() returns the first hit in chain order; set(), invalidate() and
    invalidate_pattern() apply to every backend. Backend errors are logged
    and swallowed.
    """

    def __init__(self, backends: List, default_ttl: int = DEFAULT_TTL):
        """
        Args:
            backends: Cache backends, remote first
            default_ttl: TTL in seconds when set() is not given one
        """
        if not backends:
            raise ValueError("CacheService requires at least one backend")
        self.backends = backends
        self.default_ttl = default_ttl
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_config(cls, config) -> 'CacheService':
        """
        Build the standard chain: Redis (when REDIS_URL is set and reachable)
        followed by the memory tier.
        """
        backends = []
        if config.redis_url:
            try:
                remote = RedisCacheBackend.from_url(config.redis_url)
                remote.client.ping()
                backends.append(remote)
                logger.info("Redis cache initialized successfully")
            except Exception as e:
                logger.warning(f"Failed to initialize Redis: {e}. Using memory cache only.")

        backends.append(MemoryCacheBackend(max_size=config.memory_cache_max_size))
        return cls(backends, default_ttl=config.cache_default_ttl)

    def get(self, key: str) -> Optional[Any]:
        """
        Look a key up in each backend in order.

        Returns:
            Deserialized value, or None on a miss in every tier
        """
        for backend in self.backends:
            try:
                data = backend.get(key)
                if data is None:
                    continue
                value = json.loads(data)
            except Exception as e:
                logger.error(f"{backend.name} GET error for {key}: {e}")
                continue

            logger.debug(f"{backend.name} HIT: {key}")
            self.hits += 1
            return value

        logger.debug(f"MISS (all layers): {key}")
        self.misses += 1
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Write a JSON-serializable value to every backend."""
        ttl = ttl or self.default_ttl
        data = json.dumps(value, ensure_ascii=False)

        for backend in self.backends:
            try:
                backend.set(key, data, ttl)
            except Exception as e:
                logger.error(f"{backend.name} SET error for {key}: {e}")

    def invalidate(self, key: str) -> None:
        for backend in self.backends:
            try:
                backend.delete(key)
            except Exception as e:
                logger.error(f"{backend.name} DEL error for {key}: {e}")

    def invalidate_pattern(self, pattern: str) -> None:
        """Remove every key matching a glob pattern such as 'discover:*'."""
        for backend in self.backends:
            try:
                backend.delete_pattern(pattern)
            except Exception as e:
                logger.error(f"{backend.name} pattern DEL error for {pattern}: {e}")

    def invalidate_topic(self, category: str, date: Optional[str] = None) -> List[str]:
        """
        Drop today's listing for a category and the merged 'all' listing.

        Returns:
            The keys invalidated
        """
        date = date or today_utc()
        keys = [discover_list_key(category, date), discover_list_key(ALL_TOPICS, date)]
        for key in keys:
            self.invalidate(key)
        logger.info(f"Invalidated keys: {', '.join(keys)}")
        return keys

    def stats(self) -> Dict[str, Any]:
        """Per-backend statistics plus hit/miss counters."""
        result: Dict[str, Any] = {'hits': self.hits, 'misses': self.misses}
        for backend in self.backends:
            try:
                result[backend.name] = backend.stats()
            except Exception as e:
                logger.warning(f"{backend.name} stats error: {e}")
                result[backend.name] = {'connected': False}
        return result
