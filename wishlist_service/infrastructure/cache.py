"""Time-boxed cache backends for catalog lookups.

The wishlist core never touches these directly; they shield the upstream
product catalog from request bursts. Backend errors are logged and treated
as misses.
"""

import fnmatch
import json
import threading
import time
from typing import Any, Protocol

import redis

from ..config import Settings
from ..logging_config import get_logger

logger = get_logger(__name__)


class CacheBackend(Protocol):
    """get/set/clear with a per-entry TTL."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool: ...

    def clear(self, pattern: str | None = None) -> bool: ...


class MemoryCache:
    """Process-local cache. Entries expire lazily on read."""

    def __init__(self, clock=time.monotonic):
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.debug("Memory cache miss", key=key)
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                logger.debug("Memory cache miss (expired)", key=key)
                return None
        logger.debug("Memory cache hit", key=key)
        return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)
        logger.debug("Memory cached", key=key, ttl_seconds=ttl_seconds)
        return True

    def clear(self, pattern: str | None = None) -> bool:
        with self._lock:
            if pattern is None:
                self._entries.clear()
            else:
                for key in fnmatch.filter(list(self._entries), pattern):
                    del self._entries[key]
        logger.info("Memory cache cleared", pattern=pattern)
        return True


class RedisCache:
    """Shared cache in Redis; values are stored as JSON."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Any | None:
        try:
            cached = self.client.get(key)
        except redis.RedisError as e:
            logger.error("Redis cache GET failed", key=key, error=str(e))
            return None
        if cached is None:
            logger.debug("Redis cache miss", key=key)
            return None
        logger.debug("Redis cache hit", key=key)
        return json.loads(cached)

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            self.client.setex(key, ttl_seconds, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.error("Redis cache SET failed", key=key, error=str(e))
            return False
        logger.debug("Redis cached", key=key, ttl_seconds=ttl_seconds)
        return True

    def clear(self, pattern: str | None = None) -> bool:
        try:
            if pattern is None:
                self.client.flushdb()
            else:
                keys = list(self.client.scan_iter(match=pattern))
                if keys:
                    self.client.delete(*keys)
        except redis.RedisError as e:
            logger.error("Redis cache CLEAR failed", pattern=pattern, error=str(e))
            return False
        logger.info("Redis cache cleared", pattern=pattern)
        return True


def build_cache(config: Settings) -> CacheBackend:
    """Select the cache backend once at process start."""
    if config.cache_mode == "redis":
        if not config.redis_url:
            logger.warning("CACHE_MODE=redis but REDIS_URL not set, using memory cache")
            return MemoryCache()
        logger.info("Cache mode: redis")
        return RedisCache.from_url(config.redis_url)

    logger.info("Cache mode: memory")
    return MemoryCache()
