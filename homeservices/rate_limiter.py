"""
Redis rate limiting for public endpoints (booking, inbound SMS webhook)
Fixed-window counters: one INCR + EXPIRE per request
"""

import logging
import time
from typing import Optional

import redis
from fastapi import HTTPException, Request, status

from . import config

logger = logging.getLogger(__name__)

# Redis connection
redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """Get or create the shared Redis client (used by rate limiting and the cache)"""
    global redis_client

    if redis_client is None:
        logger.info("🔄 Initializing Redis connection...")
        redis_url = config.REDIS_URL or "redis://localhost:6379/0"

        if "@" in redis_url:
            protocol = redis_url.split(":")[0]
            masked_url = f"{protocol}://****@{redis_url.split('@')[1]}"
        else:
            masked_url = redis_url
        logger.info(f"📡 Using Redis URL connection: {masked_url}")

        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=10,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        try:
            client.ping()
        except Exception as e:
            logger.error(f"❌ Failed to connect to Redis: {str(e)}")
            raise
        redis_client = client
        logger.info("✅ Redis connected successfully")

    return redis_client


def check_rate_limit(
    key: str, limit: int, window_seconds: int, client: redis.Redis
) -> tuple[bool, int, int]:
    """
    Count this request against a fixed window.

    Returns:
        Tuple of (is_allowed, current_count, ttl_seconds)
    """
    window = int(time.time()) // window_seconds
    window_key = f"{key}:{window}"

    pipe = client.pipeline()
    pipe.incr(window_key)
    pipe.expire(window_key, window_seconds)
    count, _ = pipe.execute()

    ttl = window_seconds - int(time.time()) % window_seconds
    return count <= limit, count, ttl


async def rate_limit_dependency(
    request: Request,
    limit: int,
    window_seconds: int,
    key_prefix: str = "rate_limit",
    use_ip: bool = True,
):
    """
    FastAPI dependency for rate limiting

    Args:
        request: FastAPI request object
        limit: Maximum requests allowed
        window_seconds: Time window in seconds
        key_prefix: Prefix for Redis key
        use_ip: If True, use client IP in key (per-IP limit), otherwise global
    """
    if not config.RATE_LIMIT_ENABLED:
        return

    try:
        client = get_redis_client()

        if use_ip:
            client_ip = request.client.host if request.client else "unknown"
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                client_ip = forwarded.split(",")[0].strip()
            key = f"{key_prefix}:{client_ip}"
        else:
            key = f"{key_prefix}:global"

        is_allowed, current_count, ttl = check_rate_limit(key, limit, window_seconds, client)

        if not is_allowed:
            logger.warning(f"🚫 Rate limit EXCEEDED for {key} - {current_count}/{limit} requests used")
            raise HTTPException(
                status_code=429,
                detail={
                    "message": f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                    "retry_after": ttl,
                },
                headers={"Retry-After": str(ttl)},
            )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Rate limiting error: {str(e)}")
        logger.warning("🔒 Denying request due to rate limiting error (fail-closed mode)")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limiting service temporarily unavailable",
        ) from e


def create_rate_limiter(
    limit: int, window_seconds: int, key_prefix: str = "rate_limit", use_ip: bool = True
):
    """
    Create a rate limiter dependency with specific parameters

    Example usage:
        booking_rate_limit = create_rate_limiter(limit=20, window_seconds=60, key_prefix="orders")

        @router.post("/orders")
        async def create_order(data: OrderCreate, _: None = Depends(booking_rate_limit)):
            ...
    """

    async def rate_limiter(request: Request):
        return await rate_limit_dependency(request, limit, window_seconds, key_prefix, use_ip)

    return rate_limiter
