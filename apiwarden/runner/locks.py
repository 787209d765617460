"""Per-task run locks.

A run holds the lock for its task from trigger until finalization. Locks are
never waited on: a busy lock means the trigger is rejected.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog

from apiwarden.types import LockBackend

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from apiwarden.config.settings import Settings

logger = structlog.get_logger(__name__)

# Delete the key only if it still carries our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class Locker(ABC):
    """Non-blocking mutual exclusion keyed by task id."""

    @abstractmethod
    async def try_acquire(self, key: str) -> bool: ...

    @abstractmethod
    async def release(self, key: str) -> None: ...

    @abstractmethod
    async def is_locked(self, key: str) -> bool: ...

    async def close(self) -> None:
        return None


class InMemoryLocker(Locker):
    """Single-process locker built on asyncio.Lock."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def try_acquire(self, key: str) -> bool:
        lock = self._get_lock(key)
        if lock.locked():
            return False
        # Uncontended acquire does not suspend, so no other trigger can interleave
        await lock.acquire()
        return True

    async def release(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock and lock.locked():
            lock.release()

    async def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


class RedisLocker(Locker):
    """Cross-process locker: ``SET key token NX PX ttl`` with compare-and-delete release."""

    def __init__(self, client: Redis, ttl_seconds: int = 3600, prefix: str = "apiwarden:run-lock:") -> None:
        self._client = client
        self._ttl_ms = ttl_seconds * 1000
        self._prefix = prefix
        self._tokens: dict[str, str] = {}

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def try_acquire(self, key: str) -> bool:
        token = uuid.uuid4().hex
        acquired = await self._client.set(self._key(key), token, nx=True, px=self._ttl_ms)
        if acquired:
            self._tokens[key] = token
            return True
        return False

    async def release(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is None:
            return
        released = await self._client.eval(RELEASE_SCRIPT, 1, self._key(key), token)
        if not released:
            logger.warning("run_lock_expired_before_release", key=key)

    async def is_locked(self, key: str) -> bool:
        return bool(await self._client.exists(self._key(key)))

    async def close(self) -> None:
        await self._client.aclose()


def create_locker(settings: Settings) -> Locker:
    """Build the locker selected by ``settings.lock_backend``."""
    if settings.lock_backend == LockBackend.REDIS:
        from redis.asyncio import Redis

        logger.info("run_locker_selected", backend="redis")
        client = Redis.from_url(settings.redis_url or "redis://localhost:6379/0", decode_responses=True)
        return RedisLocker(client, ttl_seconds=settings.lock_ttl_seconds)
    return InMemoryLocker()
