"""Rate limiting middleware — admission control for every request.

WHY MIDDLEWARE (NOT A ROUTE DEPENDENCY)
-----------------------------------------
This service has a single budget for all traffic from a client, so
there is nothing route-specific to configure.  A middleware applies it
uniformly, including to routes added later, and runs before any route
handler does work for a request that is going to be rejected anyway.

Probe and scrape endpoints are exempt: an orchestrator or Prometheus
hitting /health every few seconds must never be throttled, and a
throttled /metrics would hide exactly the data needed during an
incident.

CLIENT IDENTIFIER
------------------
Behind a load balancer or reverse proxy, the socket peer is the proxy,
not the client.  The proxy appends the real client to X-Forwarded-For:

  X-Forwarded-For: <client>, <proxy1>, <proxy2>

We key on the first entry.  Without the header we fall back to the
socket peer address.

NOTE: X-Forwarded-For is client-controlled when there is no proxy in
front of the service.  Only trust it when a proxy overwrites it.
"""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from ratelimiter.core.config import SETTINGS
from ratelimiter.core.metrics import RATE_LIMIT_HITS
from ratelimiter.db.redis import redis_pool
from ratelimiter.services.rate_limiter import RateLimiter
from ratelimiter.services.store import InMemoryStore, KeyValueStore, RedisStore

logger = logging.getLogger(__name__)

EXEMPT_PATHS = frozenset({"/health", "/ready", "/metrics"})

RATE_LIMITED_MESSAGE = "Too many requests, please try again later."

# ---------------------------------------------------------------------------
# Module-level singleton: Redis when configured, in-memory otherwise
# ---------------------------------------------------------------------------

if redis_pool is not None:
    _store: KeyValueStore = RedisStore(redis_pool)
else:
    _store = InMemoryStore()

_rate_limiter = RateLimiter.from_settings(SETTINGS, _store)


def client_identifier(request: Request) -> str:
    """Best available client address for keying the limiter."""
    forwarded_for = request.headers.get("x-forwarded-for", "")
    first = forwarded_for.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests over budget with 429 before they reach a route."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        limiter = _rate_limiter
        identifier = client_identifier(request)

        if await limiter.allow(identifier):
            return await call_next(request)

        RATE_LIMIT_HITS.labels(algorithm=limiter.algorithm).inc()
        logger.warning(
            "Rate limit exceeded for %s",
            identifier,
            extra={"identifier": identifier, "algorithm": limiter.algorithm},
        )
        return PlainTextResponse(RATE_LIMITED_MESSAGE, status_code=429)
