"""Rate limiting algorithms backed by a shared key-value store.

WHAT THIS MODULE DECIDES
-------------------------
For one client identifier (usually an IP address) and one budget (N
requests per window of W milliseconds), answer a single question:
may this request proceed?  Every algorithm below answers it with the
same shape of code:

  1. derive key(s) from the identifier and the current time
  2. READ the client's state from the store
  3. DECIDE against the budget
  4. WRITE the new state (only if the request is allowed)

All state lives in the store (Redis in production).  Nothing is cached
in this process between calls, so any number of API instances pointed
at the same Redis share one budget per client.

THE FIVE ALGORITHMS
--------------------
1. FIXED WINDOW  (``fixed-window``)
   One counter per client per window.  Cheapest possible state.
   Weakness: a client can spend N at 11:59:59.9 and N again at
   12:00:00.1, up to 2N requests in a fraction of a second.  This
   boundary burst is the defining trade-off of the algorithm, not a
   bug, and it is left as is.

2. SLIDING WINDOW LOG  (``sliding-log``)
   One sorted-set entry per request, scored by its timestamp.  Exact:
   no trailing window of W ms ever contains more than N allowed
   requests.  Memory grows with traffic (N entries per busy client).

3. SLIDING WINDOW COUNTER  (``sliding-window``)
   Two fixed-window counters (current and previous).  The previous
   window's count is weighted by how much of it still overlaps the
   trailing window.  Near-log accuracy with O(1) state.

4. LEAKY BUCKET  (``leaky-bucket``)
   Each request adds one unit to a bucket that drains at a constant
   rate (one unit every W/N ms).  A full bucket rejects.  Smooths
   traffic: bursts are absorbed up to N, then admission is paced at
   the drain rate no matter how the burst was shaped.

5. TOKEN BUCKET  (``token-bucket``)
   The client holds up to N tokens; each request spends one.  Refill
   here is ALL-OR-NOTHING: once a full window has passed since the
   last refill, the bucket is topped up to N in one step.  There is no
   proportional trickle between refills.  That is a deliberate
   simplification (two integers of state, no float drift), so it
   behaves closer to a fixed window anchored at the client's first
   request than to the continuous-refill bucket in most textbooks.

CONCURRENCY
------------
Each step above is a separate store round trip, so the read-decide-
write sequence is NOT atomic.  Two concurrent requests from the same
client can both read "below limit" and both be admitted.  For IP-keyed
limiting, slight over-admission under concurrency is accepted rather
than paying for a transaction or a distributed lock.  Only the INCR in
the fixed window's steady state is atomic on its own.

FAILING CLOSED
---------------
If the store cannot be reached (or anything else goes wrong mid-
decision), RateLimiter.allow() returns False.  A limiter that fails
open turns a Redis outage into an unlimited-traffic outage.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ratelimiter.core.config import ALGORITHMS, Algorithm, Settings
from ratelimiter.core.metrics import RATE_LIMIT_DECISIONS, RATE_LIMIT_STORE_ERRORS
from ratelimiter.services.store import (
    KeyValueStore,
    MalformedState,
    StoreUnavailable,
    parse_int,
)

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Wall-clock time in integer milliseconds.

    Wall clock (not monotonic) because timestamps are stored in Redis
    and compared by other processes.
    """
    return time.time_ns() // 1_000_000


@dataclass(frozen=True, slots=True)
class RateLimitBudget:
    """The request budget shared by every algorithm and every client.

    max_requests:  N — requests allowed per window.
    window_ms:     W — window duration in milliseconds.
    """

    max_requests: int
    window_ms: int

    def __post_init__(self) -> None:
        for name in ("max_requests", "window_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer (got {value!r})")
            if value <= 0:
                raise ValueError(f"{name} must be > 0 (got {value})")

    @property
    def window_ttl_seconds(self) -> int:
        """TTL for a per-window counter: gone once its window is over."""
        return math.ceil(self.window_ms / 1000)

    @property
    def idle_ttl_seconds(self) -> int:
        """TTL for per-client state: one window plus a minute of slack."""
        return math.ceil(self.window_ms / 1000) + 60


def _read_int(raw: str | None, key: str) -> int | None:
    """Parse a stored number, treating malformed values as absent."""
    try:
        return parse_int(raw)
    except MalformedState as exc:
        logger.warning("Malformed rate limit state key=%s (%s), treating as absent", key, exc)
        return None


@runtime_checkable
class Strategy(Protocol):
    """One admission algorithm.

    ``now_ms`` is passed in rather than read inside, so every key and
    every timestamp in a single decision agree on the same instant.
    """

    async def allow(self, identifier: str, now_ms: int) -> bool: ...


class FixedWindow:
    """Counter at ``{identifier}:{window_start}``.

    The first request in a window counts once: the key is created with
    value 1 and the request is allowed.  Later requests INCR while the
    count is below N.
    """

    def __init__(self, budget: RateLimitBudget, store: KeyValueStore) -> None:
        self._budget = budget
        self._store = store

    async def allow(self, identifier: str, now_ms: int) -> bool:
        window_ms = self._budget.window_ms
        window_start = (now_ms // window_ms) * window_ms
        key = f"{identifier}:{window_start}"
        ttl = self._budget.window_ttl_seconds

        count = _read_int(await self._store.get(key), key)

        if count is None:
            await self._store.set(key, 1, expire_seconds=ttl)
            return True

        if count >= self._budget.max_requests:
            logger.debug("fixed-window full key=%s count=%d", key, count)
            return False

        # INCR on a key that expired since the GET recreates it without a TTL.
        if await self._store.incr(key) == 1:
            await self._store.expire(key, ttl)
        return True


class SlidingLog:
    """Sorted set at ``sliding:{identifier}``, one entry per allowed request.

    Pruning happens before every check, allowed or not. It only drops
    entries that no longer count, it never admits anything by itself.
    """

    def __init__(self, budget: RateLimitBudget, store: KeyValueStore) -> None:
        self._budget = budget
        self._store = store

    async def allow(self, identifier: str, now_ms: int) -> bool:
        key = f"sliding:{identifier}"

        # Drop entries strictly older than now - W.  Scores are integer
        # milliseconds, so "< now - W" is "<= now - W - 1".
        await self._store.zremrangebyscore(
            key, float("-inf"), now_ms - self._budget.window_ms - 1
        )

        count = await self._store.zcard(key)
        if count >= self._budget.max_requests:
            logger.debug("sliding-log full key=%s count=%d", key, count)
            return False

        # Members must be unique: two requests in the same millisecond
        # would otherwise collapse into one entry and undercount.
        member = f"{now_ms}-{uuid.uuid4().hex[:8]}"
        await self._store.zadd(key, member, now_ms)
        await self._store.expire(key, self._budget.idle_ttl_seconds)
        return True


class SlidingWindow:
    """Weighted pair of counters at ``{identifier}:{window_index}``.

        weighted = previous * (1 - elapsed_fraction) + current

    where elapsed_fraction is how far ``now`` is into the current
    window.  Ten percent into the window, 90% of the previous window's
    requests still count against the client.
    """

    def __init__(self, budget: RateLimitBudget, store: KeyValueStore) -> None:
        self._budget = budget
        self._store = store

    async def allow(self, identifier: str, now_ms: int) -> bool:
        max_requests = self._budget.max_requests
        window_ms = self._budget.window_ms
        window_index = now_ms // window_ms
        current_key = f"{identifier}:{window_index}"

        current = _read_int(await self._store.get(current_key), current_key) or 0
        if current >= max_requests:
            logger.debug("sliding-window current full key=%s count=%d", current_key, current)
            return False

        previous_key = f"{identifier}:{window_index - 1}"
        previous = _read_int(await self._store.get(previous_key), previous_key) or 0

        elapsed_fraction = (now_ms % window_ms) / window_ms
        weighted = previous * (1 - elapsed_fraction) + current
        if weighted >= max_requests:
            logger.debug(
                "sliding-window weighted full key=%s weighted=%.3f", current_key, weighted
            )
            return False

        # The counter is read back as "previous" during the whole next
        # window, so it has to outlive two windows.
        await self._store.set(
            current_key,
            current + 1,
            expire_seconds=math.ceil(2 * window_ms / 1000),
        )
        return True


class LeakyBucket:
    """Hash at ``leaky:{identifier}`` with ``lastRequest`` and ``bucketLevel``.

    Leak rate: one unit drains every W / N milliseconds.  With N=5 and
    W=10s, a full bucket admits one more request every 2 seconds.
    Drain is computed from elapsed time on read, there is no timer.
    """

    _FIELDS = ["lastRequest", "bucketLevel"]

    def __init__(self, budget: RateLimitBudget, store: KeyValueStore) -> None:
        self._budget = budget
        self._store = store

    async def allow(self, identifier: str, now_ms: int) -> bool:
        max_requests = self._budget.max_requests
        key = f"leaky:{identifier}"

        last_raw, level_raw = await self._store.hmget(key, self._FIELDS)
        last_request = _read_int(last_raw, key) or 0
        level = _read_int(level_raw, key) or 0

        # A timestamp from the future (clock skew between instances)
        # leaks nothing rather than filling the bucket.
        elapsed = max(0, now_ms - last_request)
        # floor(elapsed / (W / N)), in integers to avoid float rounding.
        leaked = elapsed * max_requests // self._budget.window_ms
        new_level = max(0, level - leaked)

        if new_level >= max_requests:
            logger.debug("leaky-bucket full key=%s level=%d", key, new_level)
            return False

        await self._store.hset(
            key, {"lastRequest": now_ms, "bucketLevel": new_level + 1}
        )
        await self._store.expire(key, self._budget.idle_ttl_seconds)
        return True


class TokenBucket:
    """Hash at ``token:{identifier}`` with ``tokenCount`` and ``lastRefill``.

    Refill is all-or-nothing: after a full window since ``lastRefill``
    the bucket goes back to N tokens (minus the one spent by the current
    request).  Between refills tokens only go down.
    """

    _FIELDS = ["tokenCount", "lastRefill"]

    def __init__(self, budget: RateLimitBudget, store: KeyValueStore) -> None:
        self._budget = budget
        self._store = store

    async def allow(self, identifier: str, now_ms: int) -> bool:
        max_requests = self._budget.max_requests
        key = f"token:{identifier}"
        ttl = self._budget.idle_ttl_seconds

        tokens_raw, refill_raw = await self._store.hmget(key, self._FIELDS)
        tokens = _read_int(tokens_raw, key)
        tokens = max_requests if tokens is None else min(tokens, max_requests)
        last_refill = _read_int(refill_raw, key) or 0

        if now_ms - last_refill >= self._budget.window_ms:
            await self._store.hset(
                key, {"tokenCount": max_requests - 1, "lastRefill": now_ms}
            )
            await self._store.expire(key, ttl)
            return True

        if tokens <= 0:
            logger.debug("token-bucket empty key=%s", key)
            return False

        await self._store.hset(
            key, {"tokenCount": tokens - 1, "lastRefill": last_refill}
        )
        await self._store.expire(key, ttl)
        return True


# Algorithm name -> strategy class.  Strategies share no base class;
# they only have to satisfy the Strategy protocol.
STRATEGIES: dict[str, Callable[[RateLimitBudget, KeyValueStore], Strategy]] = {
    "fixed-window": FixedWindow,
    "sliding-log": SlidingLog,
    "sliding-window": SlidingWindow,
    "leaky-bucket": LeakyBucket,
    "token-bucket": TokenBucket,
}


class RateLimiter:
    """Admission decisions for one budget and one algorithm.

    The store is injected rather than looked up globally, so tests can
    pass an InMemoryStore and several limiters with different budgets
    can live in one process.  The clock is injected for the same
    reason.
    """

    def __init__(
        self,
        store: KeyValueStore,
        budget: RateLimitBudget,
        algorithm: Algorithm = "sliding-window",
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        try:
            factory = STRATEGIES[algorithm]
        except KeyError:
            raise ValueError(
                f"algorithm must be one of {'|'.join(ALGORITHMS)} (got {algorithm!r})"
            ) from None

        self.budget = budget
        self.algorithm = algorithm
        self._clock = clock
        self._strategy = factory(budget, store)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: KeyValueStore,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> RateLimiter:
        return cls(
            store,
            RateLimitBudget(
                max_requests=settings.rate_limit_max_requests,
                window_ms=settings.rate_limit_window_ms,
            ),
            settings.rate_limit_algorithm,
            clock=clock,
        )

    async def allow(self, identifier: str) -> bool:
        """Return True if the request may proceed.  Never raises.

        On allow, the client's state has been updated in the store.  On
        deny, it is left as it was (the sliding log may have pruned
        stale entries).  Any failure while talking to the store denies.
        """
        try:
            allowed = await self._strategy.allow(identifier, self._clock())
        except StoreUnavailable as exc:
            logger.warning(
                "Store unavailable during %s check, denying: %s",
                self.algorithm,
                exc,
                extra={"identifier": identifier, "algorithm": self.algorithm},
            )
            self._record_error(exc)
            return False
        except Exception as exc:
            logger.exception(
                "Unexpected error during %s check, denying",
                self.algorithm,
                extra={"identifier": identifier, "algorithm": self.algorithm},
            )
            self._record_error(exc)
            return False

        RATE_LIMIT_DECISIONS.labels(
            algorithm=self.algorithm,
            decision="allowed" if allowed else "denied",
        ).inc()
        return allowed

    def _record_error(self, exc: Exception) -> None:
        RATE_LIMIT_DECISIONS.labels(algorithm=self.algorithm, decision="error").inc()
        RATE_LIMIT_STORE_ERRORS.labels(
            algorithm=self.algorithm, error=type(exc).__name__
        ).inc()
