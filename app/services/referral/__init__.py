"""
Referral services package.

- config: Depth, default rates and chain stop reasons
- types: PurchaseEvent and the chain/derivation value types
- chain_manager: Resolves a purchaser's ancestor chain
- commission_deriver: Computes the commission entries of an event
"""

from app.services.referral.chain_manager import ReferralChainManager
from app.services.referral.commission_deriver import CommissionDeriver
from app.services.referral.config import REFERRAL_DEPTH, REFERRAL_RATES
from app.services.referral.types import (
    ChainLink,
    DerivedEntry,
    PurchaseEvent,
    RateSnapshot,
    ResolvedChain,
)


__all__ = [
    # Configuration
    "REFERRAL_DEPTH",
    "REFERRAL_RATES",
    # Resolution and derivation
    "CommissionDeriver",
    "ReferralChainManager",
    # Types
    "ChainLink",
    "DerivedEntry",
    "PurchaseEvent",
    "RateSnapshot",
    "ResolvedChain",
]
