"""
Distributed lock.

Keyed mutual exclusion for ledger writers and the reconciler. Three
backends, chosen at construction:

- Redis (``SET key token NX PX``, token-checked release) when a Redis
  client is given; shared by every process using the same Redis.
- PostgreSQL session advisory locks when given a session bound to
  PostgreSQL.
- In-process asyncio locks otherwise (single process, tests, SQLite).

Usage:
    lock = DistributedLock(redis_client=redis_client)
    async with lock.lock("aggregate:42:NGN", timeout=30) as acquired:
        ...
"""

import asyncio
import time
import uuid
import zlib
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.operational_constants import (
    BLOCKING_TIMEOUT_DEFAULT,
    LOCK_POLL_INTERVAL,
    LOCK_TIMEOUT_SHORT,
)


LOCK_PREFIX = "ledger:lock:"

# Delete the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def _advisory_key(key: str) -> int:
    """Stable signed 64-bit advisory lock id for a string key."""
    value = zlib.crc32(key.encode("utf-8"))
    return value - (1 << 32) if value >= (1 << 31) else value


class DistributedLock:
    """Keyed lock with Redis, PostgreSQL advisory or in-process backend."""

    def __init__(
        self,
        redis_client=None,
        session: AsyncSession | None = None,
    ) -> None:
        """
        Initialize lock.

        Args:
            redis_client: redis.asyncio client (preferred backend)
            session: Session bound to PostgreSQL for advisory locks
        """
        self.redis_client = redis_client
        self.session = session
        self._local_locks: dict[str, asyncio.Lock] = {}

        if redis_client is not None:
            self.backend = "redis"
        elif session is not None and session.bind.dialect.name == "postgresql":
            self.backend = "postgres"
        else:
            self.backend = "local"

    @asynccontextmanager
    async def lock(
        self,
        key: str,
        timeout: int = LOCK_TIMEOUT_SHORT,
        blocking: bool = True,
        blocking_timeout: float = BLOCKING_TIMEOUT_DEFAULT,
    ) -> AsyncIterator[bool]:
        """
        Acquire a lock for the duration of the block.

        Args:
            key: Lock key
            timeout: Lock expiry in seconds (Redis backend)
            blocking: Wait for the lock if it is held
            blocking_timeout: Maximum wait in seconds when blocking

        Yields:
            True if acquired; False only when blocking=False and the lock is held

        Raises:
            TimeoutError: blocking=True and the lock was not acquired in time
        """
        if self.backend == "redis":
            acquire, release = self._redis_acquire, self._redis_release
        elif self.backend == "postgres":
            acquire, release = self._pg_acquire, self._pg_release
        else:
            acquire, release = self._local_acquire, self._local_release

        token = await acquire(key, timeout, blocking, blocking_timeout)
        if token is None:
            if blocking:
                raise TimeoutError(
                    f"Could not acquire lock {key!r} within {blocking_timeout}s"
                )
            logger.debug(f"Lock {key} is held elsewhere", extra={"lock_key": key})
            yield False
            return

        try:
            yield True
        finally:
            await release(key, token)

    @asynccontextmanager
    async def lock_many(
        self,
        keys: Iterable[str],
        timeout: int = LOCK_TIMEOUT_SHORT,
        blocking_timeout: float = BLOCKING_TIMEOUT_DEFAULT,
    ) -> AsyncIterator[bool]:
        """
        Acquire several locks in sorted order.

        Sorting gives every caller the same acquisition order, so two
        writers touching overlapping aggregates cannot deadlock.

        Raises:
            TimeoutError: Any lock was not acquired in time (held ones are released)
        """
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(
                    self.lock(
                        key,
                        timeout=timeout,
                        blocking=True,
                        blocking_timeout=blocking_timeout,
                    )
                )
            yield True

    # Redis backend

    async def _redis_acquire(
        self, key: str, timeout: int, blocking: bool, blocking_timeout: float
    ) -> str | None:
        token = uuid.uuid4().hex
        deadline = time.monotonic() + blocking_timeout
        while True:
            acquired = await self.redis_client.set(
                LOCK_PREFIX + key, token, nx=True, px=int(timeout * 1000)
            )
            if acquired:
                return token
            if not blocking or time.monotonic() >= deadline:
                return None
            await asyncio.sleep(LOCK_POLL_INTERVAL)

    async def _redis_release(self, key: str, token: str) -> None:
        try:
            await self.redis_client.eval(_RELEASE_SCRIPT, 1, LOCK_PREFIX + key, token)
        except Exception as e:
            # Key expires on its own after the lock timeout
            logger.warning(
                f"Failed to release Redis lock {key}: {e}",
                extra={"lock_key": key},
            )

    # PostgreSQL advisory backend

    async def _pg_acquire(
        self, key: str, timeout: int, blocking: bool, blocking_timeout: float
    ) -> str | None:
        lock_id = _advisory_key(key)
        deadline = time.monotonic() + blocking_timeout
        while True:
            result = await self.session.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
            )
            if result.scalar():
                return str(lock_id)
            if not blocking or time.monotonic() >= deadline:
                return None
            await asyncio.sleep(LOCK_POLL_INTERVAL)

    async def _pg_release(self, key: str, token: str) -> None:
        await self.session.execute(
            text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": int(token)}
        )

    # In-process backend

    async def _local_acquire(
        self, key: str, timeout: int, blocking: bool, blocking_timeout: float
    ) -> str | None:
        local = self._local_locks.setdefault(key, asyncio.Lock())
        if not blocking:
            if local.locked():
                return None
            await local.acquire()
            return key
        try:
            await asyncio.wait_for(local.acquire(), timeout=blocking_timeout)
        except TimeoutError:
            return None
        return key

    async def _local_release(self, key: str, token: str) -> None:
        local = self._local_locks.get(key)
        if local is not None and local.locked():
            local.release()


def get_distributed_lock(
    redis_client=None, session: AsyncSession | None = None
) -> DistributedLock:
    """
    Build a lock for the best available backend.

    Args:
        redis_client: Optional redis.asyncio client
        session: Optional session (advisory locks on PostgreSQL)

    Returns:
        DistributedLock instance
    """
    lock = DistributedLock(redis_client=redis_client, session=session)
    logger.debug(f"Distributed lock backend: {lock.backend}")
    return lock
