"""
Cache Service
Best-effort key/value cache for query embeddings and classifications.

Backends share one contract: ``get`` returns None on a miss or any backend
error, ``set`` never raises. Callers never check whether caching is enabled.
"""
import hashlib
import json
import time
from typing import Any, Dict, Optional, Protocol, Tuple

import structlog
from redis import asyncio as aioredis

from ragcore.config import Settings

logger = structlog.get_logger()

KEY_PREFIX = "rag"


def hash_query(text: str) -> str:
    """Short deterministic hash used inside cache keys."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def embedding_cache_key(provider: str, text: str) -> str:
    return f"{KEY_PREFIX}:emb:{provider}:{hash_query(text)}"


def classification_cache_key(query: str, history_length: int) -> str:
    return f"{KEY_PREFIX}:cls:{hash_query(f'{query}:{history_length}')}"


class Cache(Protocol):
    name: str

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...


class NullCache:
    """Cache that stores nothing. Every lookup is a miss."""

    name = "none"

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        return None


class InMemoryCache:
    """Process-local TTL cache."""

    name = "memory"

    def __init__(self, max_entries: int = 10_000):
        self.max_entries = max_entries
        self._store: Dict[str, Tuple[float, Any]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            self._store.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if len(self._store) >= self.max_entries:
            self._evict_expired()
            if len(self._store) >= self.max_entries:
                # Oldest insertion goes first
                self._store.pop(next(iter(self._store)), None)
        self._store[key] = (time.monotonic() + ttl_seconds, value)

    def _evict_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, (expires_at, _) in self._store.items() if now >= expires_at]:
            del self._store[key]


class RedisCache:
    """Redis-backed cache storing JSON-encoded values."""

    name = "redis"

    def __init__(self, client: "aioredis.Redis"):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except Exception as e:
            logger.warning("Cache get error", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry", key=key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, json.dumps(value), ex=ttl_seconds)
        except Exception as e:
            logger.warning("Cache set error", key=key, error=str(e))


def create_redis_client(settings: Settings) -> Optional["aioredis.Redis"]:
    """Build a Redis client when ``redis_url`` is configured."""
    if not settings.redis_url:
        return None
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.cache_timeout_seconds,
        socket_connect_timeout=settings.cache_timeout_seconds,
    )


def build_cache(redis_client: Optional["aioredis.Redis"]) -> Cache:
    """Pick the cache backend once, at construction time."""
    if redis_client is not None:
        logger.info("Cache backend selected", backend="redis")
        return RedisCache(redis_client)
    logger.info("Cache backend selected", backend="memory")
    return InMemoryCache()
