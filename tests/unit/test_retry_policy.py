"""Unit tests for RetryPolicy and store_deadline."""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from app.utils.exceptions import (
    LedgerCancelledError,
    TransientStoreError,
    ValidationError,
)
from app.utils.retry import RetryPolicy, store_deadline


class Flaky:
    """Coroutine factory failing a fixed number of times."""

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestRetryPolicy:
    """Tests for transient retry behaviour."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_errors(self, recorded_sleeps):
        """Two transient failures are retried with the configured backoff."""
        sleep, delays = recorded_sleeps
        policy = RetryPolicy(backoff=(0.05, 0.2, 1.0), max_attempts=5, sleep=sleep)
        func = Flaky(2, TransientStoreError("busy", "test.op"))

        assert await policy.run("test.op", func) == "ok"
        assert func.calls == 3
        assert delays == [0.05, 0.2]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_retry_safe(self, recorded_sleeps):
        """Exhausted attempts surface a retry-safe transient error."""
        sleep, delays = recorded_sleeps
        policy = RetryPolicy(backoff=(0.05,), max_attempts=3, sleep=sleep)
        func = Flaky(10, TransientStoreError("busy", "test.op"))

        with pytest.raises(TransientStoreError) as exc_info:
            await policy.run("test.op", func)

        assert func.calls == 3
        assert exc_info.value.retry_safe is True
        assert delays == [0.05, 0.05]

    @pytest.mark.asyncio
    async def test_validation_error_not_retried(self, recorded_sleeps):
        """Non-transient ledger errors propagate on the first failure."""
        sleep, delays = recorded_sleeps
        policy = RetryPolicy(sleep=sleep)
        func = Flaky(1, ValidationError("bad", "test.op"))

        with pytest.raises(ValidationError):
            await policy.run("test.op", func)
        assert func.calls == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_cancellation_not_retried(self, recorded_sleeps):
        """Deadline expiry is never retried."""
        sleep, _ = recorded_sleeps
        policy = RetryPolicy(sleep=sleep)
        func = Flaky(1, LedgerCancelledError("late", "test.op"))

        with pytest.raises(LedgerCancelledError):
            await policy.run("test.op", func)
        assert func.calls == 1

    @pytest.mark.asyncio
    async def test_operational_error_is_transient(self, recorded_sleeps):
        """Driver operational errors are classified as transient."""
        sleep, delays = recorded_sleeps
        policy = RetryPolicy(backoff=(0.01,), max_attempts=3, sleep=sleep)
        func = Flaky(1, OperationalError("SELECT 1", {}, Exception("database is locked")))

        assert await policy.run("test.op", func) == "ok"
        assert delays == [0.01]

    @pytest.mark.asyncio
    async def test_unknown_error_classified_as_integrity(self, recorded_sleeps):
        """Unexpected exceptions are wrapped, not retried."""
        sleep, _ = recorded_sleeps
        policy = RetryPolicy(sleep=sleep)
        func = Flaky(1, RuntimeError("boom"))

        with pytest.raises(Exception) as exc_info:
            await policy.run("test.op", func, {"event_id": "e1"})
        assert exc_info.value.operation == "test.op"
        assert exc_info.value.ids == {"event_id": "e1"}
        assert func.calls == 1

    def test_delay_repeats_last_value(self):
        """Attempts past the sequence reuse its last delay."""
        policy = RetryPolicy(backoff=(0.05, 0.2, 1.0))
        assert [policy.delay_for(n) for n in (1, 2, 3, 4, 5)] == [0.05, 0.2, 1.0, 1.0, 1.0]

    def test_empty_backoff_means_no_delay(self):
        """An empty sequence retries immediately."""
        assert RetryPolicy(backoff=()).delay_for(3) == 0.0


class TestStoreDeadline:
    """Tests for the store call deadline."""

    @pytest.mark.asyncio
    async def test_expiry_raises_cancelled(self):
        """Work outliving the deadline is aborted."""
        with pytest.raises(LedgerCancelledError) as exc_info:
            async with store_deadline(0.01, "test.slow", {"event_id": "e1"}):
                await asyncio.sleep(1)
        assert exc_info.value.operation == "test.slow"
        assert exc_info.value.retry_safe is False

    @pytest.mark.asyncio
    async def test_fast_work_completes(self):
        """Work inside the deadline is untouched."""
        async with store_deadline(1.0):
            await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_none_disables_deadline(self):
        """None means no deadline."""
        async with store_deadline(None):
            await asyncio.sleep(0.01)
