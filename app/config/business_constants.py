"""
Business logic constants for the commission ledger.

Central location for commission rules shared by the resolver, deriver,
writer and reconciler. Must not import settings to stay importable
without environment variables.
"""

from decimal import Decimal

# Referral program: up to 3 generations above the purchaser
MAX_GENERATION = 3
GENERATIONS = (1, 2, 3)

# Default commission schedule (percent of purchase amount)
DEFAULT_GENERATION_RATES_PERCENT = {
    1: Decimal("15"),
    2: Decimal("3"),
    3: Decimal("2"),
}

# Rates are percentages; 100% is the hard ceiling
MAX_RATE_PERCENT = Decimal("100")

# Decimal places kept per currency
CURRENCY_SCALE = {
    "NGN": 2,
    "USDT": 8,
}

# Money columns are DECIMAL(24, 8): 8 places, 16 integer digits
MONEY_STORE_SCALE = 8
MONEY_MAX_INTEGER_DIGITS = 16

# Rate percent columns are DECIMAL(7, 4)
RATE_PERCENT_SCALE = 4

# Legacy currency spellings accepted at intake
CURRENCY_ALIASES = {
    "ngn": "NGN",
    "naira": "NGN",
    "usdt": "USDT",
}

# Legacy product spellings accepted at intake
PRODUCT_KIND_ALIASES = {
    "share": "share",
    "usershare": "share",
    "cofounder": "cofounder",
    "co-founder": "cofounder",
    "cofoundershare": "cofounder",
}

ROUNDING_MODES = frozenset({"half-even", "half-up"})

# Referrer handle limits
HANDLE_MAX_LENGTH = 50
