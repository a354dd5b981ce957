from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from ratelimiter.api.observability import router as observability_router
from ratelimiter.api.root import router as root_router
from ratelimiter.core.config import SETTINGS
from ratelimiter.core.logging import setup_logging
from ratelimiter.db.redis import lifespan_redis
from ratelimiter.middleware.metrics import MetricsMiddleware
from ratelimiter.middleware.rate_limit import RateLimitMiddleware
from ratelimiter.middleware.request_context import RequestContextMiddleware

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    async with lifespan_redis():
        yield


app = FastAPI(
    title="redis-rate-limiter",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

# Middleware execution order: last-added runs first (outermost layer).
# RequestContext (outermost) → Metrics → RateLimit → route handler
# so 429s still get a request ID and are counted in the HTTP metrics.
app.add_middleware(RateLimitMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(observability_router)
app.include_router(root_router)

logger.info(
    "rate limiter started  env=%s algorithm=%s budget=%d/%dms redis=%s",
    SETTINGS.app_env,
    SETTINGS.rate_limit_algorithm,
    SETTINGS.rate_limit_max_requests,
    SETTINGS.rate_limit_window_ms,
    "on" if SETTINGS.redis_url else "off",
)


def run() -> None:
    """Console entry point: serve the app on PORT."""
    uvicorn.run(app, host="0.0.0.0", port=SETTINGS.port, log_config=None)


if __name__ == "__main__":
    run()
