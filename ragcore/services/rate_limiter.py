"""
Rate Limiter
Per-identifier request windows backed by Redis, with a process-local fallback.
"""
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

import structlog
from redis import asyncio as aioredis

from ragcore.config import Settings
from ragcore.models.schemas import RateLimitResult

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int


def rate_limits_from_settings(settings: Settings) -> Dict[str, RateLimitConfig]:
    """Named limits applied by the API layer."""
    window = settings.rate_limit_window_ms
    return {
        "chat": RateLimitConfig(settings.rate_limit_chat, window),
        "search": RateLimitConfig(settings.rate_limit_search, window),
        "upload": RateLimitConfig(settings.rate_limit_upload, window),
        "process": RateLimitConfig(settings.rate_limit_process, window),
        "general": RateLimitConfig(settings.rate_limit_general, window),
    }


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter(Protocol):
    name: str

    async def check(self, identifier: str, max_requests: int, window_ms: int) -> RateLimitResult:
        ...


class InMemoryRateLimiter:
    """Fixed-window counter kept in this process."""

    name = "memory"

    def __init__(self):
        # identifier -> (count, reset_at_ms)
        self._windows: Dict[str, Tuple[int, int]] = {}

    async def check(self, identifier: str, max_requests: int, window_ms: int) -> RateLimitResult:
        now = _now_ms()
        self._prune(now)

        count, reset_at = self._windows.get(identifier, (0, now + window_ms))
        if count >= max_requests:
            return RateLimitResult(
                allowed=False, limit=max_requests, remaining=0, reset_timestamp=reset_at
            )

        count += 1
        self._windows[identifier] = (count, reset_at)
        return RateLimitResult(
            allowed=True,
            limit=max_requests,
            remaining=max(max_requests - count, 0),
            reset_timestamp=reset_at,
        )

    def _prune(self, now: int) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if now >= reset_at]
        for key in expired:
            del self._windows[key]


class RedisRateLimiter:
    """
    Fixed-window counter in Redis.

    INCR, PEXPIRE NX and PTTL run in one MULTI/EXEC transaction, so concurrent
    instances never race on the window start.
    """

    name = "redis"
    KEY_PREFIX = "ratelimit"

    def __init__(self, client: "aioredis.Redis", fallback: Optional[InMemoryRateLimiter] = None):
        self.client = client
        self.fallback = fallback or InMemoryRateLimiter()

    async def check(self, identifier: str, max_requests: int, window_ms: int) -> RateLimitResult:
        key = f"{self.KEY_PREFIX}:{identifier}"
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.pexpire(key, window_ms, nx=True)
                pipe.pttl(key)
                count, _, ttl_ms = await pipe.execute()
        except Exception as e:
            logger.warning("Redis rate limit error, using in-memory fallback", error=str(e))
            return await self.fallback.check(identifier, max_requests, window_ms)

        ttl_ms = ttl_ms if isinstance(ttl_ms, int) and ttl_ms > 0 else window_ms
        count = int(count)
        return RateLimitResult(
            allowed=count <= max_requests,
            limit=max_requests,
            remaining=max(max_requests - count, 0),
            reset_timestamp=_now_ms() + ttl_ms,
        )


def build_rate_limiter(redis_client: Optional["aioredis.Redis"]) -> RateLimiter:
    if redis_client is not None:
        return RedisRateLimiter(redis_client)
    return InMemoryRateLimiter()
