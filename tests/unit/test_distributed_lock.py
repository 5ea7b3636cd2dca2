"""
Unit tests for DistributedLock.

Covers the in-process backend directly and the Redis backend against a
mocked client.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.utils.distributed_lock import LOCK_PREFIX, DistributedLock, get_distributed_lock


class TestLocalBackend:
    """Tests for in-process locking."""

    def test_backend_selection(self, mock_redis_client):
        """Redis wins when a client is given; local otherwise."""
        assert DistributedLock().backend == "local"
        assert get_distributed_lock(mock_redis_client).backend == "redis"

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        """A released key can be taken again."""
        lock = DistributedLock()
        async with lock.lock("aggregate:A:NGN") as acquired:
            assert acquired is True
        async with lock.lock("aggregate:A:NGN") as acquired:
            assert acquired is True

    @pytest.mark.asyncio
    async def test_non_blocking_when_held(self):
        """Non-blocking acquisition of a held key yields False."""
        lock = DistributedLock()
        async with lock.lock("reconciliation:all"):
            async with lock.lock("reconciliation:all", blocking=False) as acquired:
                assert acquired is False

    @pytest.mark.asyncio
    async def test_blocking_timeout_raises(self):
        """Blocking acquisition past its timeout raises TimeoutError."""
        lock = DistributedLock()
        async with lock.lock("k"):
            with pytest.raises(TimeoutError):
                async with lock.lock("k", blocking_timeout=0.01):
                    pass

    @pytest.mark.asyncio
    async def test_mutual_exclusion(self):
        """Holders of the same key never overlap."""
        lock = DistributedLock()
        active = 0
        peak = 0

        async def worker() -> None:
            nonlocal active, peak
            async with lock.lock("k"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.001)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(10)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_lock_many_releases_on_timeout(self):
        """Keys taken before a failing one are released."""
        lock = DistributedLock()
        async with lock.lock("b"):
            with pytest.raises(TimeoutError):
                async with lock.lock_many(["a", "b"], blocking_timeout=0.01):
                    pass
        async with lock.lock("a", blocking=False) as acquired:
            assert acquired is True


class TestRedisBackend:
    """Tests for Redis locking with a mocked client."""

    @pytest.mark.asyncio
    async def test_set_nx_with_expiry(self, mock_redis_client):
        """Acquisition uses SET NX PX and release runs the token script."""
        lock = DistributedLock(redis_client=mock_redis_client)
        async with lock.lock("aggregate:A:NGN", timeout=30) as acquired:
            assert acquired is True

        args, kwargs = mock_redis_client.set.call_args
        assert args[0] == LOCK_PREFIX + "aggregate:A:NGN"
        assert kwargs == {"nx": True, "px": 30_000}
        token = args[1]
        mock_redis_client.eval.assert_awaited_once()
        assert mock_redis_client.eval.call_args.args[2:] == (LOCK_PREFIX + "aggregate:A:NGN", token)

    @pytest.mark.asyncio
    async def test_lock_many_sorted_order(self, mock_redis_client):
        """Keys are acquired in sorted order without duplicates."""
        lock = DistributedLock(redis_client=mock_redis_client)
        async with lock.lock_many(["c", "a", "b", "a"]):
            pass

        keys = [c.args[0] for c in mock_redis_client.set.call_args_list]
        assert keys == [LOCK_PREFIX + k for k in ("a", "b", "c")]

    @pytest.mark.asyncio
    async def test_held_key_non_blocking(self):
        """SET returning None means the key is held."""
        client = AsyncMock()
        client.set = AsyncMock(return_value=None)
        lock = DistributedLock(redis_client=client)

        async with lock.lock("k", blocking=False) as acquired:
            assert acquired is False
        client.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_failure_is_logged_not_raised(self, mock_redis_client):
        """A failed release leaves the key to expire."""
        mock_redis_client.eval = AsyncMock(side_effect=ConnectionError("gone"))
        lock = DistributedLock(redis_client=mock_redis_client)
        async with lock.lock("k") as acquired:
            assert acquired is True
