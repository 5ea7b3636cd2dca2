"""
Retry and deadline helpers for ledger store calls.

Transient store errors are retried with a fixed backoff sequence; every
store transaction runs under a deadline and is aborted when it expires.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

from loguru import logger

from app.config.operational_constants import (
    STORE_CALL_DEADLINE,
    STORE_MAX_ATTEMPTS,
    STORE_RETRY_BACKOFF,
)
from app.utils.exceptions import (
    LedgerCancelledError,
    TransientStoreError,
    classify_store_error,
)


T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff policy for transient store errors.

    Attributes:
        backoff: Delays in seconds between attempts; the last one repeats
        max_attempts: Total attempts including the first
        sleep: Awaitable sleep (injectable for tests)
    """

    backoff: Sequence[float] = STORE_RETRY_BACKOFF
    max_attempts: int = STORE_MAX_ATTEMPTS
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, compare=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-indexed)."""
        if not self.backoff:
            return 0.0
        index = min(attempt - 1, len(self.backoff) - 1)
        return float(self.backoff[index])

    async def run(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        ids: dict[str, Any] | None = None,
    ) -> T:
        """
        Call ``func`` until it succeeds or a non-transient error occurs.

        Args:
            operation: Operation name used in errors and logs
            func: Zero-argument coroutine factory, called once per attempt
            ids: Identifiers attached to raised errors

        Returns:
            Result of the first successful attempt

        Raises:
            TransientStoreError: Attempts exhausted (retry_safe stays True)
            LedgerError: Any non-transient ledger error, unchanged
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func()
            except LedgerCancelledError:
                raise
            except Exception as exc:
                error = classify_store_error(exc, operation, ids)
                if not isinstance(error, TransientStoreError):
                    if error is exc:
                        raise
                    raise error from exc
                if attempt >= self.max_attempts:
                    logger.error(
                        f"{operation}: transient store error after {attempt} attempts: {error.message}",
                        extra={"operation": operation, "attempts": attempt, **(ids or {})},
                    )
                    if error is exc:
                        raise
                    raise error from exc
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{operation}: transient store error, retrying in {delay:.3f}s "
                    f"(attempt {attempt}/{self.max_attempts})",
                    extra={"operation": operation, "attempt": attempt, **(ids or {})},
                )
                await self.sleep(delay)


@asynccontextmanager
async def store_deadline(
    seconds: float | None = STORE_CALL_DEADLINE,
    operation: str = "store",
    ids: dict[str, Any] | None = None,
) -> AsyncIterator[None]:
    """
    Abort the enclosed store work when the deadline expires.

    Expiry cancels the in-flight work (the transaction is rolled back by
    its owner) and is surfaced as LedgerCancelledError, which is never
    retried.

    Args:
        seconds: Deadline in seconds; None disables it
        operation: Operation name for the raised error
        ids: Identifiers attached to the raised error
    """
    if seconds is None:
        yield
        return
    cm = asyncio.timeout(seconds)
    try:
        async with cm:
            yield
    except TimeoutError as exc:
        if not cm.expired():
            raise
        raise LedgerCancelledError(
            f"{operation} exceeded its {seconds}s deadline", operation, ids
        ) from exc
