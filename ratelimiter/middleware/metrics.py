"""Prometheus HTTP metrics middleware.

Sits outside RateLimitMiddleware, so a 429 is observed like any other
response: it shows up as status_code="429" next to the 200s for the
same endpoint, and the ratio of the two is the throttle rate a client
actually sees.

The endpoint label is the template of the route that serves the
request, never the raw path.  A throttled scanner walking random
paths would otherwise mint a new time series per path.
"""

from __future__ import annotations

import time
from collections.abc import Iterable

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import BaseRoute, Match

from ratelimiter.core.metrics import ACTIVE_REQUESTS, REQUEST_COUNT, REQUEST_DURATION

UNMATCHED_ENDPOINT = "unmatched"


def _matched_path(routes: Iterable[BaseRoute], scope: dict) -> str | None:
    for route in routes:
        match, child_scope = route.matches(scope)
        if match != Match.FULL:
            continue
        path = getattr(child_scope.get("route", route), "path", None)
        if path:
            return path
        nested = getattr(route, "routes", None)
        if nested:
            path = _matched_path(nested, scope)
            if path:
                return path
    return None


def endpoint_label(request: Request) -> str:
    """Route template that serves this request, or UNMATCHED_ENDPOINT.

    Once routing has run, the matched route is in the scope.  A request
    the limiter rejected never reached the router, so its path is
    matched against the app's routes here.
    """
    path = getattr(request.scope.get("route"), "path", None)
    if path:
        return path
    router = getattr(request.app, "router", None)
    path = _matched_path(getattr(router, "routes", ()), request.scope)
    return path or UNMATCHED_ENDPOINT


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        status_code = "500"
        ACTIVE_REQUESTS.inc()
        started = time.monotonic()
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            return response
        finally:
            ACTIVE_REQUESTS.dec()
            endpoint = endpoint_label(request)
            REQUEST_COUNT.labels(
                method=request.method, endpoint=endpoint, status_code=status_code
            ).inc()
            REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(
                time.monotonic() - started
            )
