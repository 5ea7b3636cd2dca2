"""
Ledger configuration.

Components take a LedgerConfig instead of reading global settings, so they
can be built in tests without environment variables.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from app.config.operational_constants import (
    BLOCKING_TIMEOUT_DEFAULT,
    LOCK_TIMEOUT_EXTENDED,
    LOCK_TIMEOUT_SHORT,
    RECONCILER_BATCH_SIZE,
    STORE_CALL_DEADLINE,
    STORE_MAX_ATTEMPTS,
    STORE_RETRY_BACKOFF,
)
from app.config.business_constants import MAX_GENERATION
from app.utils.retry import RetryPolicy


@dataclass(frozen=True)
class LedgerConfig:
    """
    Ledger tuning knobs.

    Attributes:
        rounding_mode: half-even or half-up
        store_call_deadline: Seconds before a store transaction is aborted
        retry_backoff: Delays (seconds) between transient retries
        retry_max_attempts: Attempts before a transient error is fatal
        intake_queue_capacity: Bounded intake queue size
        intake_workers: Intake worker count
        reconciler_interval: Seconds between scheduled reconciliations
        reconciler_batch_size: Events read per reconciler batch
        lock_timeout: Aggregate lock expiry (seconds)
        lock_blocking_timeout: Max wait for an aggregate lock (seconds)
        reconcile_lock_timeout: Full-run lock expiry (seconds)
        max_generation: Chain depth
    """

    rounding_mode: str = "half-even"
    store_call_deadline: float | None = STORE_CALL_DEADLINE
    retry_backoff: tuple[float, ...] = STORE_RETRY_BACKOFF
    retry_max_attempts: int = STORE_MAX_ATTEMPTS
    intake_queue_capacity: int = 10_000
    intake_workers: int = 4
    reconciler_interval: int = 900
    reconciler_batch_size: int = RECONCILER_BATCH_SIZE
    lock_timeout: int = LOCK_TIMEOUT_SHORT
    lock_blocking_timeout: float = BLOCKING_TIMEOUT_DEFAULT
    reconcile_lock_timeout: int = LOCK_TIMEOUT_EXTENDED
    max_generation: int = MAX_GENERATION

    @classmethod
    def from_settings(cls, settings: Any) -> "LedgerConfig":
        """Build from application Settings."""
        return cls(
            rounding_mode=settings.rounding_mode,
            store_call_deadline=settings.store_call_deadline_seconds,
            retry_backoff=settings.get_retry_backoff(),
            retry_max_attempts=settings.retry_max_attempts,
            intake_queue_capacity=settings.intake_queue_capacity,
            intake_workers=settings.intake_workers,
            reconciler_interval=settings.reconciler_interval_seconds,
        )

    def retry_policy(
        self, sleep: Callable[[float], Awaitable[Any]] | None = None
    ) -> RetryPolicy:
        """Retry policy for store calls."""
        if sleep is None:
            return RetryPolicy(self.retry_backoff, self.retry_max_attempts)
        return RetryPolicy(self.retry_backoff, self.retry_max_attempts, sleep)
