"""Idempotency stores.

``with_key`` runs a coroutine function at most once per key and hands the
memoized result to every concurrent and later caller. A failed run releases
the key so the next caller runs the function again.
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as redis

from payments_core.modules.billing.ports import IdempotencyStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local store guarded by one asyncio.Lock per key.

    Results are kept as-is (no serialization). ``ttl_seconds`` bounds how
    long a memoized result is returned; None keeps results forever. Expired
    results are evicted whenever a new result is stored, and a key's lock is
    dropped once no caller holds or waits on it.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # Insertion order is storage order, oldest first
        self._results: dict[str, tuple[float, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def _expired(self, stored_at: float) -> bool:
        return self.ttl_seconds is not None and self._clock() - stored_at > self.ttl_seconds

    def _lookup(self, key: str) -> Any:
        entry = self._results.get(key)
        if entry is None:
            return _MISSING
        stored_at, result = entry
        if self._expired(stored_at):
            del self._results[key]
            return _MISSING
        return result

    def _store(self, key: str, result: Any) -> None:
        self._results.pop(key, None)
        self._results[key] = (self._clock(), result)
        while self._results:
            oldest = next(iter(self._results))
            if not self._expired(self._results[oldest][0]):
                break
            del self._results[oldest]

    async def with_key(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        cached = self._lookup(key)
        if cached is not _MISSING:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                cached = self._lookup(key)
                if cached is not _MISSING:
                    return cached

                result = await fn()
                self._store(key, result)
                return result
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                self._locks.pop(key, None)

    def has_result(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING

    def __len__(self) -> int:
        return len(self._results)


class RedisIdempotencyStore(IdempotencyStore):
    """Cross-process store on Redis.

    The first caller reserves the key with ``SET NX`` and a lease; others
    poll until the result appears. Results are stored JSON-encoded, so
    callers must return JSON-serialisable values.
    """

    PENDING = "__pending__"

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = 86400,
        lease_seconds: int = 60,
        poll_interval: float = 0.05,
        prefix: str = "billing:idempotency:",
    ):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self.prefix = prefix

    async def with_key(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        redis_key = f"{self.prefix}{key}"

        while True:
            reserved = await self.client.set(
                redis_key, self.PENDING, nx=True, ex=self.lease_seconds
            )
            if reserved:
                return await self._run(redis_key, fn)

            value = await self.client.get(redis_key)
            if value is None:
                # Released by a failed run or the lease expired
                continue
            if value == self.PENDING:
                await asyncio.sleep(self.poll_interval)
                continue
            return json.loads(value)["result"]

    async def _run(self, redis_key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await fn()
        except BaseException:
            await self.client.delete(redis_key)
            raise

        await self.client.set(
            redis_key,
            json.dumps({"result": result}),
            ex=self.ttl_seconds,
        )
        return result
