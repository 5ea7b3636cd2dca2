"""
Enumerations shared by ledger models and services.
"""

from enum import StrEnum


class ParticipantStatus(StrEnum):
    """Participant account status (owned by the host system)."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    BANNED = "banned"


class Currency(StrEnum):
    """Purchase and commission currency. Never converted inside the ledger."""

    NGN = "NGN"
    USDT = "USDT"


class ProductKind(StrEnum):
    """Purchased product. Metadata only; does not affect rates."""

    SHARE = "share"
    COFOUNDER = "cofounder"


class EntryStatus(StrEnum):
    """
    Commission entry status.

    active -> duplicate (reconciler) and active -> rolled_back (admin
    rollback) are the only transitions; both targets are terminal.
    """

    ACTIVE = "active"
    DUPLICATE = "duplicate"
    ROLLED_BACK = "rolled_back"


class ErrorKind(StrEnum):
    """Ledger error taxonomy."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    INTEGRITY = "integrity"
    CANCELLATION = "cancellation"


class ReconcilerRunStatus(StrEnum):
    """Outcome of a reconciler run."""

    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
