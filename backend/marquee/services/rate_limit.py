"""
rate_limit.py

Redis sliding-window limiter for third-party quotas (Trakt, TMDB) with
exponential backoff around outbound calls.
"""
import time
import asyncio
import logging
from typing import Any, Dict, Optional
from marquee.core.redis_client import get_redis

logger = logging.getLogger(__name__)

RATE_LIMITS = {
    "trakt_api": {"limit": 1000, "window": 300},  # 1000 requests per 5 minutes
    "tmdb_api": {"limit": 40, "window": 10},      # 40 requests per 10 seconds
}


class RateLimitExceeded(Exception):
    """Raised when the local quota for a service is exhausted."""

    def __init__(self, message: str, service: Optional[str] = None, user_id: Optional[str] = None,
                 status: Optional[Dict] = None):
        super().__init__(message)
        self.service = service
        self.user_id = user_id
        self.status = status or {}


class AsyncLimiter:
    """Redis-based rate limiter with sliding window."""

    def __init__(self, service: str, user_id: str = "global"):
        self.service = service
        self.user_id = user_id
        self.redis = get_redis()
        self.config = RATE_LIMITS.get(service, {"limit": 10, "window": 60})

    @property
    def key(self) -> str:
        return f"rate_limit:{self.service}:{self.user_id}"

    async def acquire(self) -> bool:
        """Attempt to take a slot. Returns True if allowed, False if rate limited."""
        now = time.time()
        window = self.config["window"]
        limit = self.config["limit"]

        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(self.key, 0, now - window)
        pipe.zadd(self.key, {f"{now:.6f}": now})
        pipe.zcard(self.key)
        pipe.expire(self.key, window)
        results = await pipe.execute()
        current_count = results[2]

        if current_count > limit:
            logger.warning(f"Rate limit exceeded for {self.service} (user: {self.user_id}): {current_count}/{limit}")
            return False
        return True

    async def get_status(self) -> Dict[str, Any]:
        limit = self.config["limit"]
        current_count = await self.redis.zcard(self.key)
        return {
            "service": self.service,
            "user_id": self.user_id,
            "limit": limit,
            "remaining": max(0, limit - current_count),
            "reset_time": int(time.time()) + self.config["window"],
            "current_count": current_count,
        }


async def check_rate_limit(user_id: str, service: str) -> None:
    """Check rate limit and raise RateLimitExceeded if the quota is used up."""
    limiter = AsyncLimiter(service, user_id)
    if not await limiter.acquire():
        status = await limiter.get_status()
        raise RateLimitExceeded(f"Rate limit exceeded for {service}", service=service, user_id=user_id, status=status)


def _is_throttled(exc: Exception) -> bool:
    return isinstance(exc, RateLimitExceeded) or getattr(exc, "status_code", None) == 429


async def with_backoff(func, *args, max_retries: int = 5, service: Optional[str] = None,
                       user_id: Optional[str] = None, **kwargs):
    """Run func with exponential backoff while the service is throttling us.

    Non-throttle errors propagate immediately.
    """
    delay = 1
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries):
        try:
            if service and user_id:
                await check_rate_limit(user_id, service)
            return await func(*args, **kwargs)
        except Exception as e:
            if not _is_throttled(e):
                raise
            last_exception = e
            logger.warning(f"{service or 'api'} throttled on attempt {attempt + 1}/{max_retries}, sleeping {delay}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, 30)

    raise last_exception or RateLimitExceeded(f"Max retries ({max_retries}) exceeded", service=service, user_id=user_id)
