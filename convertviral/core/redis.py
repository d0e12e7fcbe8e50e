"""Redis connection configuration."""

import redis.asyncio as redis
from fastapi import Request


def create_redis(redis_url: str) -> redis.Redis:
    """Create a Redis client for ``redis_url``."""
    return redis.from_url(redis_url, decode_responses=True)


async def get_redis(request: Request) -> redis.Redis:
    """Get the Redis client created at application startup."""
    return request.app.state.redis
