"""
Referral system configuration.

Contains constants and configuration for the referral system.
"""

from app.config.business_constants import (
    DEFAULT_GENERATION_RATES_PERCENT,
    MAX_GENERATION,
)

# 3-generation referral program; rates are percent of the purchase amount
REFERRAL_DEPTH = MAX_GENERATION
REFERRAL_RATES = DEFAULT_GENERATION_RATES_PERCENT

# Why a chain walk stopped early
STOP_MISSING_HANDLE = "missing_handle"
STOP_INVALID_HANDLE = "invalid_handle"
STOP_UNRESOLVABLE = "unresolvable_handle"
STOP_PURCHASER = "purchaser_reached"
STOP_CYCLE = "cycle"
STOP_UNKNOWN_PURCHASER = "unknown_purchaser"
