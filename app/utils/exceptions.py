"""
Exception handling utilities.

Defines the ledger error taxonomy. Every error carries the failed
operation, the offending id(s) and whether a retry is safe, so callers
can route it (retry, dead-letter, surface) without string matching.
"""

import asyncio
from typing import Any

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from app.models.enums import ErrorKind


class LedgerError(Exception):
    """
    Base ledger error.

    Attributes:
        kind: Error category (validation, transient, conflict, ...)
        operation: Operation that failed (e.g. "writer.apply")
        ids: Offending identifiers (event_id, beneficiary_id, entry_id, ...)
        retry_safe: Whether the caller may retry the same call
    """

    kind: ErrorKind = ErrorKind.INTEGRITY
    retry_safe: bool = False

    def __init__(
        self,
        message: str,
        operation: str,
        ids: dict[str, Any] | None = None,
        retry_safe: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.ids = dict(ids or {})
        if retry_safe is not None:
            self.retry_safe = retry_safe

    def to_payload(self) -> dict[str, Any]:
        """Serializable form for dead letters and notifications."""
        return {
            "kind": str(self.kind),
            "operation": self.operation,
            "ids": {k: str(v) for k, v in self.ids.items()},
            "retry_safe": self.retry_safe,
            "message": self.message,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind}, operation={self.operation!r}, "
            f"ids={self.ids}, message={self.message!r})"
        )


class ValidationError(LedgerError):
    """Malformed event, unknown participant, bad amount or currency."""

    kind = ErrorKind.VALIDATION


class TransientStoreError(LedgerError):
    """Connection loss, timeout or contention. Safe to retry."""

    kind = ErrorKind.TRANSIENT
    retry_safe = True


class ConflictError(LedgerError):
    """An existing active entry disagrees with the derived amount."""

    kind = ErrorKind.CONFLICT


class IntegrityViolation(LedgerError):
    """Invariant violation detected at read time."""

    kind = ErrorKind.INTEGRITY


class LedgerCancelledError(LedgerError):
    """Deadline expired or caller cancelled; nothing partial was committed."""

    kind = ErrorKind.CANCELLATION


class IntakeQueueFullError(LedgerError):
    """Intake queue is at capacity; the producer should pause and retry."""

    kind = ErrorKind.TRANSIENT
    retry_safe = True


# Unique index guarding one active entry per (event, generation, beneficiary)
ACTIVE_ENTRY_INDEX = "uq_commission_entries_active"


def is_transient_store_error(exc: BaseException) -> bool:
    """
    Check if a low-level store exception is worth retrying.

    Args:
        exc: Exception raised by the driver or SQLAlchemy

    Returns:
        True for connection loss, lock contention and driver timeouts
    """
    if isinstance(exc, TransientStoreError):
        return True
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


def is_active_entry_collision(exc: BaseException) -> bool:
    """Whether an IntegrityError comes from the active-entry unique index."""
    if not isinstance(exc, IntegrityError):
        return False
    text = str(exc.orig) if exc.orig is not None else str(exc)
    # Postgres names the index; SQLite lists the indexed columns
    return ACTIVE_ENTRY_INDEX in text or (
        "commission_entries.event_id" in text
        and "commission_entries.beneficiary_id" in text
    )


def classify_store_error(
    exc: BaseException, operation: str, ids: dict[str, Any] | None = None
) -> LedgerError:
    """
    Map a raw store exception onto the ledger taxonomy.

    Args:
        exc: Exception to classify
        operation: Operation name for the error record
        ids: Offending identifiers

    Returns:
        LedgerError subclass instance (the input itself if already one)
    """
    if isinstance(exc, LedgerError):
        return exc
    if is_active_entry_collision(exc):
        # A concurrent writer inserted the same key; retrying turns it into a noop
        return TransientStoreError(
            f"Concurrent insert of an active entry: {exc}", operation, ids
        )
    if is_transient_store_error(exc):
        return TransientStoreError(str(exc) or type(exc).__name__, operation, ids)
    if isinstance(exc, IntegrityError):
        return IntegrityViolation(str(exc.orig or exc), operation, ids)
    return IntegrityViolation(f"{type(exc).__name__}: {exc}", operation, ids)
