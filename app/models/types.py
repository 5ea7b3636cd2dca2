"""
Standard type definitions for database models.

Provides consistent types for monetary and rate fields across all models.
"""

from sqlalchemy import DECIMAL

# Standard money type for purchase amounts, commissions and aggregates
# Precision: 24 digits total, 8 after decimal point
# Suitable for: NGN (scale 2) and USDT (scale 8) amounts
MoneyType = DECIMAL(24, 8)

# Commission rate stored as percent (e.g., 15.0000 = 15%)
# Range: 0.0000 to 100.0000
RatePercentType = DECIMAL(7, 4)

# Commission rate applied to an entry, stored as a fraction (0.15 = 15%)
RateFractionType = DECIMAL(10, 8)
