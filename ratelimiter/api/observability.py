"""Operational endpoints: liveness, readiness and the Prometheus scrape.

  /health (liveness + dependency status):
    Always 200 while the process can respond.  The "status" field says
    whether the rate limiter's store is reachable.  With Redis down the
    limiter fails closed, so "degraded" here means clients are being
    denied, not that the process should be restarted.

  /ready (readiness):
    503 when Redis is configured but unreachable, so the load balancer
    routes traffic to instances that can actually admit requests.

  /metrics:
    Text exposition format for Prometheus.  Client identifiers never
    appear in it, only counts per algorithm and decision.

All three are exempt from rate limiting.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ratelimiter.core.config import SETTINGS
from ratelimiter.db.redis import redis_pool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["observability"])


async def _redis_status() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except Exception:
        logger.warning("Redis ping failed", exc_info=True)
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    redis_status = await _redis_status()
    return {
        "status": "degraded" if redis_status == "degraded" else "ok",
        "checks": {"redis": redis_status},
        "rate_limit": {
            "algorithm": SETTINGS.rate_limit_algorithm,
            "max_requests": SETTINGS.rate_limit_max_requests,
            "window_ms": SETTINGS.rate_limit_window_ms,
        },
    }


@router.get("/ready")
async def ready() -> Response:
    if await _redis_status() == "degraded":
        return Response(status_code=503)
    return Response(status_code=200)


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
