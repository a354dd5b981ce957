"""Rate limiting middleware tests.

Verifies:
1. Requests within budget reach the route (200)
2. Requests over budget get 429 with a plain-text message
3. Clients are keyed by the first X-Forwarded-For entry, else the peer
4. Probe and metrics endpoints are never throttled
5. A failing store denies (fail closed)
"""

from __future__ import annotations

import logging

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from starlette.requests import Request

from ratelimiter.middleware import rate_limit
from ratelimiter.middleware.rate_limit import RATE_LIMITED_MESSAGE, client_identifier
from ratelimiter.services.rate_limiter import RateLimitBudget, RateLimiter
from ratelimiter.services.store import InMemoryStore
from tests.conftest import BrokenStore, FakeClock

MAX_REQUESTS = 3


@pytest.fixture
def limiter(monkeypatch: pytest.MonkeyPatch, clock: FakeClock) -> RateLimiter:
    """Swap the app's limiter for one on a frozen clock."""
    limiter = RateLimiter(
        InMemoryStore(clock=clock.seconds),
        RateLimitBudget(max_requests=MAX_REQUESTS, window_ms=10_000),
        "sliding-window",
        clock=clock,
    )
    monkeypatch.setattr(rate_limit, "_rate_limiter", limiter)
    return limiter


def _xff(ip: str) -> dict[str, str]:
    return {"X-Forwarded-For": ip}


def test_root_route_is_reachable(client: TestClient) -> None:
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.text == "Hello, World!"


def test_requests_over_budget_get_429(client: TestClient, limiter: RateLimiter) -> None:
    statuses = [client.get("/").status_code for _ in range(MAX_REQUESTS + 2)]
    assert statuses == [200] * MAX_REQUESTS + [429, 429]


def test_429_body_is_plain_text(client: TestClient, limiter: RateLimiter) -> None:
    for _ in range(MAX_REQUESTS):
        client.get("/")
    resp = client.get("/")
    assert resp.status_code == 429
    assert resp.text == RATE_LIMITED_MESSAGE
    assert resp.headers["content-type"].startswith("text/plain")


def test_budget_recovers_after_window(
    client: TestClient, limiter: RateLimiter, clock: FakeClock
) -> None:
    for _ in range(MAX_REQUESTS + 1):
        client.get("/")
    clock.advance(20_000)
    assert client.get("/").status_code == 200


def test_forwarded_clients_have_separate_budgets(
    client: TestClient, limiter: RateLimiter
) -> None:
    for _ in range(MAX_REQUESTS):
        client.get("/", headers=_xff("198.51.100.1, 10.0.0.1"))

    # Same client through a different proxy chain: same budget
    assert client.get("/", headers=_xff("198.51.100.1")).status_code == 429
    assert client.get("/", headers=_xff("198.51.100.2")).status_code == 200


def test_exempt_paths_are_never_throttled(
    client: TestClient, limiter: RateLimiter
) -> None:
    for _ in range(MAX_REQUESTS + 1):
        client.get("/")

    for path in ("/health", "/ready", "/metrics"):
        for _ in range(MAX_REQUESTS + 1):
            assert client.get(path).status_code == 200, path


def test_store_failure_denies(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    broken = RateLimiter(BrokenStore(), RateLimitBudget(100, 10_000), "fixed-window")
    monkeypatch.setattr(rate_limit, "_rate_limiter", broken)

    assert client.get("/").status_code == 429
    assert client.get("/health").status_code == 200


def test_denials_are_counted_and_logged(
    client: TestClient, limiter: RateLimiter, caplog: pytest.LogCaptureFixture
) -> None:
    labels = {"algorithm": "sliding-window"}
    before = REGISTRY.get_sample_value("rate_limit_hits_total", labels) or 0.0

    with caplog.at_level(logging.WARNING, logger="ratelimiter.middleware.rate_limit"):
        for _ in range(MAX_REQUESTS + 2):
            client.get("/", headers=_xff("192.0.2.9"))

    after = REGISTRY.get_sample_value("rate_limit_hits_total", labels) or 0.0
    assert after - before == 2
    denials = [r for r in caplog.records if "Rate limit exceeded" in r.getMessage()]
    assert len(denials) == 2
    assert denials[0].identifier == "192.0.2.9"  # type: ignore[attr-defined]


# ---- client_identifier ----


def _request(headers: dict[str, str], client: tuple[str, int] | None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": client,
    }
    return Request(scope)


def test_identifier_prefers_first_forwarded_entry() -> None:
    req = _request({"X-Forwarded-For": " 203.0.113.5 , 10.0.0.1"}, ("10.0.0.1", 4000))
    assert client_identifier(req) == "203.0.113.5"


def test_identifier_falls_back_to_peer_address() -> None:
    assert client_identifier(_request({}, ("192.0.2.1", 4000))) == "192.0.2.1"


def test_identifier_ignores_empty_forwarded_header() -> None:
    req = _request({"X-Forwarded-For": ""}, ("192.0.2.1", 4000))
    assert client_identifier(req) == "192.0.2.1"


def test_identifier_unknown_without_peer() -> None:
    assert client_identifier(_request({}, None)) == "unknown"
