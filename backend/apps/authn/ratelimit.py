"""
Redis-backed rate limiter.

Fixed window counters, checked and incremented atomically inside Redis by
a Lua script so concurrent requests from the same user cannot race.
"""
import time
import logging
from dataclasses import dataclass
from typing import Optional

import redis
import redis.asyncio as aioredis
from django.conf import settings

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # Unix timestamp
    retry_after: Optional[int] = None  # seconds to wait if blocked


def get_redis_client() -> aioredis.Redis:
    """Get an asyncio Redis client from the configured URL."""
    redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
    return aioredis.from_url(redis_url, decode_responses=True)


def is_rate_limiting_disabled() -> bool:
    """Check if rate limiting is disabled (dev mode only)."""
    return getattr(settings, 'DISABLE_RATE_LIMITING', False)


def get_user_limit() -> int:
    """Requests allowed per user per window."""
    return getattr(settings, 'RATE_LIMIT_PER_USER', 30)


def get_ip_limit() -> int:
    """Requests allowed per source IP per window (coarser, IPs are shared)."""
    return get_user_limit() * getattr(settings, 'RATE_LIMIT_IP_MULTIPLIER', 3)


def get_window_seconds() -> int:
    return getattr(settings, 'RATE_LIMIT_WINDOW_SECONDS', 60)


# Lua script for atomic fixed window rate limiting
FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

-- Calculate window start
local window_start = math.floor(now / window) * window
local window_key = key .. ":" .. window_start

-- Get current count
local current = tonumber(redis.call('GET', window_key) or '0')

-- Check if over limit
if current >= limit then
    local reset_at = window_start + window
    local retry_after = reset_at - now
    return {0, limit, 0, reset_at, retry_after}
end

-- Increment and set expiry
redis.call('INCR', window_key)
redis.call('EXPIRE', window_key, window + 1)

local remaining = limit - current - 1
local reset_at = window_start + window
return {1, limit, remaining, reset_at, 0}
"""


class RateLimiter:
    """Redis-backed fixed window rate limiter."""

    def __init__(self, client: Optional[aioredis.Redis] = None):
        self._redis = client
        self._fixed_window_script = None

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    async def check(
        self,
        key: str,
        limit: int,
        window_seconds: int
    ) -> RateLimitResult:
        """
        Count one request against a fixed window.

        Fails open: if Redis is unreachable the request is allowed.

        Args:
            key: Rate limit key (e.g., "query:user:user123")
            limit: Maximum requests per window
            window_seconds: Window size in seconds

        Returns:
            RateLimitResult with allow/deny and metadata
        """
        if is_rate_limiting_disabled():
            return RateLimitResult(allowed=True, limit=limit, remaining=limit, reset_at=0)

        try:
            if self._fixed_window_script is None:
                self._fixed_window_script = self.redis.register_script(FIXED_WINDOW_SCRIPT)

            now = int(time.time())
            result = await self._fixed_window_script(
                keys=[f"ratelimit:{key}"],
                args=[limit, window_seconds, now]
            )
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return RateLimitResult(allowed=True, limit=limit, remaining=0, reset_at=0)

        allowed, limit, remaining, reset_at, retry_after = result

        return RateLimitResult(
            allowed=bool(allowed),
            limit=limit,
            remaining=remaining,
            reset_at=reset_at,
            retry_after=retry_after if retry_after > 0 else None
        )


# Singleton instance
_limiter: Optional[RateLimiter] = None


def get_limiter() -> RateLimiter:
    """Get the singleton rate limiter instance."""
    global _limiter
    if _limiter is None:
        _limiter = RateLimiter()
    return _limiter
