"""Redis connection management.

When REDIS_URL is configured, we create a real connection pool; when
it's None (local dev, tests), the rate limiter falls back to the
in-memory store and no Redis server is needed.

WHY REDIS FOR RATE LIMITING
----------------------------
Rate-limit state is:
  - Ephemeral (counters and buckets are worthless after a window)
  - Hot-path (read and written on every single request)
  - Shared (every API instance must see the same counters, or a
    client gets N requests per instance instead of N in total)

Redis covers all three: sub-millisecond reads, built-in TTLs so idle
clients clean themselves up, and per-key atomic commands (INCR, ZADD,
HSET) that the algorithms build on.

CONNECTION POOLING
------------------
One pool is shared by the whole process.  Concurrent requests borrow a
connection for a single round trip and give it back; no client-side
locking is involved.  Correctness relies on Redis executing each
command atomically, not on anything in this process.

SOCKET TIMEOUT
---------------
Every round trip is bounded by REDIS_SOCKET_TIMEOUT.  A timed-out
command raises, the store adapter turns that into StoreUnavailable,
and the limiter denies the request.  We never retry inside a single
admission decision.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from ratelimiter.core.config import SETTINGS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Conditional Redis client (None when REDIS_URL is not set)
# ---------------------------------------------------------------------------
# Consumers of redis_pool check for None and fall back to in-memory.

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,  # return str instead of bytes
        max_connections=20,
        socket_timeout=SETTINGS.redis_socket_timeout,
        socket_connect_timeout=SETTINGS.redis_socket_timeout,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis.

    Verifies the connection on startup and releases the pool on
    shutdown.  An unreachable Redis does NOT stop the app from
    starting: the limiter fails closed, so requests are denied until
    Redis comes back, and /health reports "degraded".
    """
    if redis_pool is None:
        logger.info("No REDIS_URL configured, rate limiter uses the in-memory store")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    except Exception:
        logger.exception("Redis connection failed on startup; requests will be denied")

    try:
        yield
    finally:
        await redis_pool.aclose()
        logger.info("Redis connection pool closed")
