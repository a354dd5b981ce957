"""Key-value store capability used by the rate limiting algorithms.

WHAT THE ALGORITHMS NEED
-------------------------
The five algorithms only ever use a small slice of Redis:

  strings:      GET, SET (with EX), INCR
  hashes:       HMGET, HSET (mapping)
  sorted sets:  ZADD, ZREMRANGEBYSCORE, ZCARD
  keys:         EXPIRE

KeyValueStore is that slice as a Protocol.  The limiter depends on the
Protocol, never on redis-py directly, so tests and local dev can run
against InMemoryStore without a Redis server.

ERRORS
------
Two failure kinds cross this boundary:

  StoreUnavailable — the round trip failed (connection refused,
    timeout, protocol/WRONGTYPE error).  RedisStore converts every
    redis-py error into this so callers handle one exception type.

  MalformedState — a stored value did not parse as the number we
    wrote.  Should never happen with correct writes; the algorithms
    treat such a value as absent instead of failing the request.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Protocol, TypeVar, runtime_checkable

from redis.exceptions import RedisError

T = TypeVar("T")


class StoreUnavailable(Exception):
    """A store round trip failed (connection, timeout or protocol error)."""


class MalformedState(ValueError):
    """A stored value does not have the expected numeric shape."""


def parse_int(raw: str | bytes | None) -> int | None:
    """Parse a stored counter/timestamp.

    Returns None for an absent value.  Integral floats ("3.0") are
    accepted since some clients serialize numbers that way.

    Raises:
        MalformedState: the value is present but not an integer.
    """
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        value = float(raw)
    except ValueError:
        raise MalformedState(f"not a number: {raw!r}") from None
    if not value.is_integer():
        raise MalformedState(f"not an integer: {raw!r}")
    return int(value)


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimum store capability the rate limiting algorithms require."""

    async def get(self, key: str) -> str | None: ...

    async def set(
        self, key: str, value: str | int, *, expire_seconds: int | None = None
    ) -> None: ...

    async def incr(self, key: str) -> int: ...

    async def hmget(self, key: str, fields: list[str]) -> list[str | None]: ...

    async def hset(self, key: str, mapping: Mapping[str, str | int]) -> None: ...

    async def zadd(self, key: str, member: str, score: float) -> None: ...

    async def zremrangebyscore(
        self, key: str, min_score: float, max_score: float
    ) -> None: ...

    async def zcard(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> None: ...


class InMemoryStore:
    """In-memory store with Redis-like TTL semantics, for dev and tests.

    Expiry is evaluated lazily against the injected clock (seconds), so
    tests can move time forward and watch keys disappear exactly like
    they would in Redis.

    LIMITATION: per-process.  Two API instances with their own
    InMemoryStore each admit the full budget, so production
    uses RedisStore.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        # key -> str (string), dict[str, str] (hash) or dict[str, float] (zset)
        self._data: dict[str, object] = {}
        self._zsets: set[str] = set()
        # key -> absolute expiry (clock seconds)
        self._expires_at: dict[str, float] = {}

    def clear(self) -> None:
        self._data.clear()
        self._zsets.clear()
        self._expires_at.clear()

    def ttl(self, key: str) -> float | None:
        """Seconds until `key` expires, or None if absent / persistent."""
        self._purge(key)
        expires_at = self._expires_at.get(key)
        if expires_at is None:
            return None
        return expires_at - self._clock()

    def _purge(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._delete(key)

    def _delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._zsets.discard(key)
        self._expires_at.pop(key, None)

    def _lookup(self, key: str, kind: str) -> object | None:
        self._purge(key)
        value = self._data.get(key)
        if value is None:
            return None
        actual = (
            "zset" if key in self._zsets else "hash" if isinstance(value, dict) else "string"
        )
        if actual != kind:
            raise StoreUnavailable(
                f"WRONGTYPE operation against a key holding {actual} ({key!r})"
            )
        return value

    async def get(self, key: str) -> str | None:
        value = self._lookup(key, "string")
        return value  # type: ignore[return-value]

    async def set(
        self, key: str, value: str | int, *, expire_seconds: int | None = None
    ) -> None:
        # SET replaces any type and clears the previous TTL.
        self._delete(key)
        self._data[key] = str(value)
        if expire_seconds is not None:
            self._expires_at[key] = self._clock() + expire_seconds

    async def incr(self, key: str) -> int:
        current = self._lookup(key, "string")
        try:
            value = int(current) + 1 if current is not None else 1  # type: ignore[arg-type]
        except ValueError:
            raise StoreUnavailable(
                f"value is not an integer or out of range ({key!r})"
            ) from None
        # INCR keeps an existing TTL.
        self._data[key] = str(value)
        return value

    async def hmget(self, key: str, fields: list[str]) -> list[str | None]:
        value = self._lookup(key, "hash") or {}
        return [value.get(f) for f in fields]  # type: ignore[attr-defined]

    async def hset(self, key: str, mapping: Mapping[str, str | int]) -> None:
        value = self._lookup(key, "hash")
        if value is None:
            value = {}
            self._data[key] = value
        value.update({f: str(v) for f, v in mapping.items()})  # type: ignore[attr-defined]

    async def zadd(self, key: str, member: str, score: float) -> None:
        value = self._lookup(key, "zset")
        if value is None:
            value = {}
            self._data[key] = value
            self._zsets.add(key)
        value[member] = score  # type: ignore[index]

    async def zremrangebyscore(
        self, key: str, min_score: float, max_score: float
    ) -> None:
        value = self._lookup(key, "zset")
        if value is None:
            return
        for member in [m for m, s in value.items() if min_score <= s <= max_score]:  # type: ignore[attr-defined]
            del value[member]  # type: ignore[attr-defined]
        if not value:
            # Redis deletes keys whose sorted set becomes empty.
            self._delete(key)

    async def zcard(self, key: str) -> int:
        value = self._lookup(key, "zset")
        return len(value) if value is not None else 0  # type: ignore[arg-type]

    async def expire(self, key: str, seconds: int) -> None:
        self._purge(key)
        if key in self._data:
            self._expires_at[key] = self._clock() + seconds

    async def members(self, key: str) -> dict[str, float]:
        """Sorted-set contents (tests/debugging)."""
        value = self._lookup(key, "zset")
        return dict(value) if value is not None else {}  # type: ignore[call-overload]

    def keys(self) -> list[str]:
        """Live keys (expired keys are purged first)."""
        for key in list(self._data):
            self._purge(key)
        return list(self._data)


class RedisStore:
    """Redis-backed store shared by every limiter instance.

    Thin adapter over a ``redis.asyncio.Redis`` client created with
    ``decode_responses=True``.  Every redis-py error, socket error and
    timeout is re-raised as StoreUnavailable with the original error
    chained for the traceback.
    """

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def _call(self, op: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StoreUnavailable(f"redis {op} failed: {exc}") from exc

    async def get(self, key: str) -> str | None:
        return await self._call("GET", self._redis.get(key))

    async def set(
        self, key: str, value: str | int, *, expire_seconds: int | None = None
    ) -> None:
        await self._call("SET", self._redis.set(key, value, ex=expire_seconds))

    async def incr(self, key: str) -> int:
        return int(await self._call("INCR", self._redis.incr(key)))

    async def hmget(self, key: str, fields: list[str]) -> list[str | None]:
        return list(await self._call("HMGET", self._redis.hmget(key, fields)))

    async def hset(self, key: str, mapping: Mapping[str, str | int]) -> None:
        await self._call("HSET", self._redis.hset(key, mapping=dict(mapping)))

    async def zadd(self, key: str, member: str, score: float) -> None:
        await self._call("ZADD", self._redis.zadd(key, {member: score}))

    async def zremrangebyscore(
        self, key: str, min_score: float, max_score: float
    ) -> None:
        await self._call(
            "ZREMRANGEBYSCORE", self._redis.zremrangebyscore(key, min_score, max_score)
        )

    async def zcard(self, key: str) -> int:
        return int(await self._call("ZCARD", self._redis.zcard(key)))

    async def expire(self, key: str, seconds: int) -> None:
        await self._call("EXPIRE", self._redis.expire(key, seconds))
