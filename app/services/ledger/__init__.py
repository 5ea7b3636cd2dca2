"""
Commission ledger package.

- intake: Event validation, de-duplication and the bounded intake queue
- writer: Idempotent per-event entry writes and aggregate updates
- rollback: Explicit event rollback
- reconciler: Duplicate quarantine, missing entries, aggregate rebuild
- queries / admin: Read side and audited admin actions
- service: CommissionLedgerService facade
"""

from app.services.ledger.config import LedgerConfig
from app.services.ledger.notifications import LedgerNotification, LedgerNotifier
from app.services.ledger.reconciler import ReconcileScope, Reconciler
from app.services.ledger.service import CommissionLedgerService
from app.services.ledger.types import (
    AggregateSnapshot,
    ApplyResult,
    GenerationTotals,
    HandleCheck,
    Page,
    RollbackResult,
    SubmitResult,
)


__all__ = [
    "CommissionLedgerService",
    "LedgerConfig",
    "LedgerNotification",
    "LedgerNotifier",
    "ReconcileScope",
    "Reconciler",
    # Results
    "AggregateSnapshot",
    "ApplyResult",
    "GenerationTotals",
    "HandleCheck",
    "Page",
    "RollbackResult",
    "SubmitResult",
]
