"""Fixed window algorithm tests.

Verifies:
1. N requests in one window are allowed, the next is denied
2. A new window starts with a fresh counter
3. The first request in a window counts once
4. The boundary burst (up to 2N across a window edge) is allowed
5. Malformed counters are treated as absent
"""

from __future__ import annotations

import asyncio

from ratelimiter.services.store import InMemoryStore
from tests.conftest import T0, FakeClock, calls_at, make_limiter


def test_concrete_scenario(store: InMemoryStore, clock: FakeClock) -> None:
    limiter = make_limiter(store, clock, "fixed-window")
    results = calls_at(limiter, clock, [0, 1, 2, 3, 4, 5, 10_001])
    assert results == [True, True, True, True, True, False, True]


def test_first_request_counts_once(store: InMemoryStore, clock: FakeClock) -> None:
    limiter = make_limiter(store, clock, "fixed-window")
    calls_at(limiter, clock, [0])
    assert asyncio.run(store.get(f"A:{T0}")) == "1"

    calls_at(limiter, clock, [1])
    assert asyncio.run(store.get(f"A:{T0}")) == "2"


def test_denial_leaves_counter_unchanged(store: InMemoryStore, clock: FakeClock) -> None:
    limiter = make_limiter(store, clock, "fixed-window")
    calls_at(limiter, clock, [0, 0, 0, 0, 0, 0, 0])
    assert asyncio.run(store.get(f"A:{T0}")) == "5"


def test_counter_expires_with_window(store: InMemoryStore, clock: FakeClock) -> None:
    limiter = make_limiter(store, clock, "fixed-window")
    calls_at(limiter, clock, [0])
    assert store.ttl(f"A:{T0}") == 10

    clock.at(10_000)
    assert f"A:{T0}" not in store.keys()


def test_window_reset_after_exhaustion(store: InMemoryStore, clock: FakeClock) -> None:
    limiter = make_limiter(store, clock, "fixed-window")
    assert calls_at(limiter, clock, [2_000] * 6)[-1] is False
    # One full window later, with no requests in between
    assert calls_at(limiter, clock, [12_000]) == [True]


def test_boundary_burst_admits_up_to_twice_the_budget(
    store: InMemoryStore, clock: FakeClock
) -> None:
    """Known weakness: the budget resets on the window edge."""
    limiter = make_limiter(store, clock, "fixed-window")
    results = calls_at(limiter, clock, [9_999] * 5 + [10_000] * 5)
    assert results == [True] * 10


def test_identifiers_are_isolated(store: InMemoryStore, clock: FakeClock) -> None:
    limiter = make_limiter(store, clock, "fixed-window", max_requests=1)
    assert calls_at(limiter, clock, [0, 0], identifier="A") == [True, False]
    assert calls_at(limiter, clock, [0], identifier="B") == [True]


def test_malformed_counter_treated_as_absent(
    store: InMemoryStore, clock: FakeClock
) -> None:
    asyncio.run(store.set(f"A:{T0}", "not-a-number"))
    limiter = make_limiter(store, clock, "fixed-window")

    assert calls_at(limiter, clock, [0]) == [True]
    assert asyncio.run(store.get(f"A:{T0}")) == "1"
