from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from ratelimiter.main import app
from ratelimiter.middleware.rate_limit import _store
from ratelimiter.services.rate_limiter import RateLimitBudget, RateLimiter
from ratelimiter.services.store import InMemoryStore, StoreUnavailable

# Ensure repo root is on sys.path so `import ratelimiter` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# A wall-clock-like start time that sits exactly on a 10s window boundary.
T0 = 1_700_000_000_000


class FakeClock:
    """Millisecond clock shared by a limiter and its InMemoryStore."""

    def __init__(self, start_ms: int = T0) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def seconds(self) -> float:
        return self.now_ms / 1000

    def at(self, offset_ms: int) -> None:
        """Jump to T0 + offset_ms."""
        self.now_ms = T0 + offset_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class BrokenStore:
    """A store whose every operation fails like an unreachable Redis."""

    def __init__(self, exc: Exception | None = None) -> None:
        self._exc = exc or StoreUnavailable("connection refused")

    async def _fail(self, *args, **kwargs):
        raise self._exc

    get = set = incr = hmget = hset = _fail
    zadd = zremrangebyscore = zcard = expire = _fail


@pytest.fixture(autouse=True)
def reset_rate_limit_store() -> None:
    """Clear the app's limiter state between tests so budgets don't bleed."""
    if hasattr(_store, "clear"):
        _store.clear()  # type: ignore[union-attr]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(clock=clock.seconds)


def make_limiter(
    store,
    clock: FakeClock,
    algorithm: str,
    max_requests: int = 5,
    window_ms: int = 10_000,
) -> RateLimiter:
    return RateLimiter(
        store,
        RateLimitBudget(max_requests=max_requests, window_ms=window_ms),
        algorithm,  # type: ignore[arg-type]
        clock=clock,
    )


def calls_at(
    limiter: RateLimiter,
    clock: FakeClock,
    offsets_ms: list[int],
    identifier: str = "A",
) -> list[bool]:
    """Call limiter.allow(identifier) at each T0 + offset, in order."""

    async def _run() -> list[bool]:
        results = []
        for offset in offsets_ms:
            clock.at(offset)
            results.append(await limiter.allow(identifier))
        return results

    return asyncio.run(_run())
