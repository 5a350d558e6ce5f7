from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import LockError

from flightpay.core.errors import ConcurrentModification
from flightpay.core.logging import get_logger

logger = get_logger(__name__)

LOCK_PREFIX = "flightpay:lock:"


def payment_key(reference: str) -> str:
    return f"payment:{reference}"


def booking_key(booking_id: str) -> str:
    return f"booking:{booking_id}"


class ReferenceLocks:
    """
    Keyed mutual exclusion for payment read-modify-write cycles.

    Unrelated keys never contend. Within one process an ``asyncio.Lock`` per
    key serializes callers; when a Redis client is supplied the same key is
    also held as a Redis lock so other workers serialize too.
    """

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        *,
        ttl_seconds: float = 30.0,
        blocking_timeout: float = 10.0,
    ) -> None:
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds
        self._blocking_timeout = blocking_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                if self._redis is None:
                    yield
                else:
                    async with self._distributed(key):
                        yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    @asynccontextmanager
    async def _distributed(self, key: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{LOCK_PREFIX}{key}",
            timeout=self._ttl_seconds,
            blocking_timeout=self._blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            logger.warning("payment.lock.timeout", key=key)
            raise ConcurrentModification(f"could not acquire lock for {key}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as exc:
                # The TTL ran out while the work was in flight.
                logger.warning("payment.lock.release_failed", key=key, error=str(exc))

    def active_keys(self) -> list[str]:
        return sorted(self._locks)
