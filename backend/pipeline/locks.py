"""
Fulfillment locks.

Serialise the client-return and webhook confirmation paths for one checkout
session, and every later write to the order it produced (see order_lock_key).
The in-process lock covers a single worker; the Redis lock
(SET NX PX + compare-and-delete release) covers several.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis
import structlog

from pipeline.errors import FulfillmentError
from pipeline.settings import settings


class IFulfillmentLock(ABC):

    @abstractmethod
    async def acquire(self, key: str, holder_id: str, timeout: float) -> bool:
        """Block up to `timeout` seconds. Returns True when acquired."""
        pass

    @abstractmethod
    async def release(self, key: str, holder_id: str) -> bool:
        """Release only if `holder_id` still owns the lock"""
        pass

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[str]:
        timeout = settings.FULFILLMENT_LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        holder_id = str(uuid.uuid4())
        if not await self.acquire(key, holder_id, timeout):
            raise FulfillmentError(f"Timed out waiting for fulfillment lock on {key}")
        try:
            yield holder_id
        finally:
            await self.release(key, holder_id)


class InProcessFulfillmentLock(IFulfillmentLock):
    """
    asyncio.Lock per key. Each entry is reference-counted by its holder and
    waiters and dropped once the last of them is gone.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}
        self._holders: dict[str, str] = {}
        self._mutex = asyncio.Lock()

    async def _checkout(self, key: str) -> asyncio.Lock:
        async with self._mutex:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
                self._refs[key] = 0
            self._refs[key] += 1
            return self._locks[key]

    async def _checkin(self, key: str) -> None:
        async with self._mutex:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    async def acquire(self, key: str, holder_id: str, timeout: float) -> bool:
        lock = await self._checkout(key)
        acquired = False
        try:
            async with asyncio.timeout(timeout):
                await lock.acquire()
            acquired = True
        except TimeoutError:
            return False
        finally:
            if not acquired:
                await self._checkin(key)
        self._holders[key] = holder_id
        return True

    async def release(self, key: str, holder_id: str) -> bool:
        if self._holders.get(key) != holder_id:
            return False
        del self._holders[key]
        self._locks[key].release()
        await self._checkin(key)
        return True


# KEYS[1] = lock key, ARGV[1] = holder id
RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisFulfillmentLock(IFulfillmentLock):
    """
    Distributed lock: SET key holder NX PX ttl, polled until the timeout.
    The TTL bounds how long a crashed worker can keep a session locked.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "fulfillment:lock:",
        ttl_ms: int = 60_000,
        poll_interval: float = 0.05,
    ):
        self._redis = client
        self._prefix = prefix
        self._ttl_ms = ttl_ms
        self._poll_interval = poll_interval
        self._release = self._redis.register_script(RELEASE_SCRIPT)
        self._logger = structlog.get_logger().bind(component="redis_fulfillment_lock")

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisFulfillmentLock":
        return cls(redis.from_url(url), **kwargs)

    async def acquire(self, key: str, holder_id: str, timeout: float) -> bool:
        name = self._prefix + key
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self._redis.set(name, holder_id, nx=True, px=self._ttl_ms):
                return True
            if loop.time() >= deadline:
                self._logger.warning("lock_timeout", key=key)
                return False
            await asyncio.sleep(self._poll_interval)

    async def release(self, key: str, holder_id: str) -> bool:
        released = await self._release(keys=[self._prefix + key], args=[holder_id])
        return bool(released)

    async def close(self) -> None:
        await self._redis.aclose()


def order_lock_key(order) -> str:
    """Lock key shared by fulfillment and every later write to the order"""
    return f"session:{order.checkout_session_id or order.id}"
