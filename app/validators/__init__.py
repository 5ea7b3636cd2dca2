"""
Validators package.

Pure validation predicates for purchase events and referral handles.
"""

from app.validators.common import (
    fits_scale,
    validate_amount,
    validate_currency,
    validate_product_kind,
)
from app.validators.referral_handle import (
    is_valid_referrer_handle,
    validate_referrer_handle,
)


__all__ = [
    "fits_scale",
    "is_valid_referrer_handle",
    "validate_amount",
    "validate_currency",
    "validate_product_kind",
    "validate_referrer_handle",
]
