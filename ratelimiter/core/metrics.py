"""Application metrics using the Prometheus client library.

All metrics are defined here so there is one inventory of everything the
service measures.  Other modules import a metric and increment/observe
it at the point of action.

WHAT TO WATCH
--------------
  rate_limit_decisions_total{decision="denied"}
    Normal throttling.  A sudden jump for one algorithm usually means a
    single client is bursting.

  rate_limit_decisions_total{decision="error"}
  rate_limit_store_errors_total
    The limiter fails closed: every store error is a denied request.
    Alert on rate(rate_limit_store_errors_total[5m]) > 0. A Redis
    outage shows up here before anywhere else.

  rate_limit_hits_total
    429 responses actually served by the HTTP layer.  For HTTP traffic it
    equals denied plus error decisions.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    # The limiter adds one to three Redis round trips per request, so
    # the interesting range is low single-digit milliseconds.
    buckets=[0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Rate limiting metrics
# ---------------------------------------------------------------------------

RATE_LIMIT_DECISIONS = Counter(
    "rate_limit_decisions_total",
    "Admission decisions by algorithm and outcome",
    ["algorithm", "decision"],  # decision: "allowed", "denied" or "error"
)

RATE_LIMIT_STORE_ERRORS = Counter(
    "rate_limit_store_errors_total",
    "Store failures converted into denials (fail closed)",
    ["algorithm", "error"],  # error: exception class name
)

RATE_LIMIT_HITS = Counter(
    "rate_limit_hits_total",
    "Requests rejected with 429 by the HTTP layer",
    ["algorithm"],
)
