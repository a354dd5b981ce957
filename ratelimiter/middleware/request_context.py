"""Request context middleware — one ID per request, one access line.

A denied request produces two log lines: the "Rate limit exceeded"
warning from RateLimitMiddleware and the access line written here.
Both carry the same request_id, taken from a ContextVar that the log
handler filter copies onto every record.

Inbound X-Request-ID values are reused so an ID assigned at the edge
proxy survives into these logs.  Values that are empty or longer than
MAX_REQUEST_ID_LENGTH are replaced with a fresh UUID; they end up in
every log line and must not be an amplification vector.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ratelimiter.core.logging import request_id_var

logger = logging.getLogger(__name__)

MAX_REQUEST_ID_LENGTH = 128


def resolve_request_id(request: Request) -> str:
    incoming = request.headers.get("x-request-id", "").strip()
    if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
        return incoming
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = resolve_request_id(request)
        token = request_id_var.set(req_id)
        started = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        duration_ms = round((time.monotonic() - started) * 1000, 1)

        logger.info(
            "%s %s → %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={
                "request_id": req_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        response.headers["X-Request-ID"] = req_id
        return response
