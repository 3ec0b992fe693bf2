"""
Global per-IP rate limiting with a Redis sliding window.

Each request is scored into a sorted set keyed by client IP; entries older
than the window are trimmed before counting.  When Redis cannot be reached the
limiter falls back to an in-process window (single worker only).
"""

import time
import logging

from fastapi import Request
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

# In-memory fallback when Redis is unavailable
_memory_store: dict[str, list[float]] = {}


async def _check_rate_limit_redis(
    redis_client, key: str, max_requests: int, window: int
) -> tuple[bool, int]:
    """Check rate limit using Redis sorted set sliding window."""
    now = time.time()
    pipeline = redis_client.pipeline()
    pipeline.zremrangebyscore(key, 0, now - window)
    pipeline.zadd(key, {str(now): now})
    pipeline.zcard(key)
    pipeline.expire(key, window)
    results = await pipeline.execute()
    count = results[2]
    return count > max_requests, count


def _check_rate_limit_memory(
    key: str, max_requests: int, window: int, now: float | None = None
) -> tuple[bool, int]:
    """Fallback in-memory rate limiter (single-process only)."""
    now = time.time() if now is None else now
    hits = [t for t in _memory_store.get(key, []) if t > now - window]
    hits.append(now)
    _memory_store[key] = hits
    count = len(hits)
    return count > max_requests, count


def client_ip(request: Request) -> str:
    """Extract client IP from request, respecting X-Forwarded-For."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Generous global limit applied to every request per IP."""

    def __init__(
        self,
        app,
        redis_url: str,
        max_requests: int = 200,
        window_seconds: int = 60,
    ):
        super().__init__(app)
        self.redis_url = redis_url
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    async def dispatch(self, request: Request, call_next):
        key = f"global_rl:{client_ip(request)}"

        try:
            import redis.asyncio as aioredis

            r = aioredis.from_url(self.redis_url, decode_responses=True)
            try:
                exceeded, _ = await _check_rate_limit_redis(
                    r, key, self.max_requests, self.window_seconds
                )
            finally:
                await r.aclose()
        except (RedisError, OSError):
            logger.debug("Redis unavailable, using in-memory rate limit window")
            exceeded, _ = _check_rate_limit_memory(
                key, self.max_requests, self.window_seconds
            )

        if exceeded:
            return JSONResponse(
                status_code=429,
                content={
                    "detail": f"Rate limit exceeded. Max {self.max_requests} requests per {self.window_seconds}s.",
                    "code": "rate_limited",
                },
                headers={"Retry-After": str(self.window_seconds)},
            )

        return await call_next(request)
