"""
Services.

Business logic layer.
"""

from app.services.ledger import (
    CommissionLedgerService,
    LedgerConfig,
    LedgerNotifier,
    ReconcileScope,
)
from app.services.referral import CommissionDeriver, ReferralChainManager


__all__ = [
    # Ledger
    "CommissionLedgerService",
    "LedgerConfig",
    "LedgerNotifier",
    "ReconcileScope",
    # Referral
    "CommissionDeriver",
    "ReferralChainManager",
]
