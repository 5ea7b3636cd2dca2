"""
Money arithmetic for commissions.

All amounts are Decimal; floats never enter the ledger.
"""

from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal

from app.config.business_constants import CURRENCY_SCALE


_ROUNDING = {
    "half-even": ROUND_HALF_EVEN,
    "half-up": ROUND_HALF_UP,
}

HUNDRED = Decimal("100")


def currency_quantum(currency: str) -> Decimal:
    """
    Smallest representable unit for a currency.

    Args:
        currency: NGN or USDT

    Returns:
        Decimal quantum (0.01 for NGN, 0.00000001 for USDT)

    Raises:
        KeyError: Unknown currency
    """
    return Decimal(1).scaleb(-CURRENCY_SCALE[currency])


def round_amount(
    value: Decimal, currency: str, rounding_mode: str = "half-even"
) -> Decimal:
    """Round an amount to the currency scale."""
    return value.quantize(currency_quantum(currency), rounding=_ROUNDING[rounding_mode])


def rate_fraction(rate_percent: Decimal) -> Decimal:
    """Convert a percentage rate (15) to the fraction applied (0.15)."""
    return Decimal(rate_percent) / HUNDRED


def commission_amount(
    amount: Decimal,
    rate_percent: Decimal,
    currency: str,
    rounding_mode: str = "half-even",
) -> Decimal:
    """
    Commission owed for one generation.

    Args:
        amount: Purchase amount
        rate_percent: Generation rate in percent
        currency: Purchase currency (selects the scale)
        rounding_mode: half-even or half-up

    Returns:
        Rounded commission amount
    """
    return round_amount(amount * rate_fraction(rate_percent), currency, rounding_mode)


def conflict_tolerance(currency: str) -> Decimal:
    """Half a unit in the last place: differences above this are conflicts."""
    return currency_quantum(currency) / 2


def amounts_agree(stored: Decimal, derived: Decimal, currency: str) -> bool:
    """Whether a stored amount matches a derived one within rounding."""
    return abs(Decimal(stored) - Decimal(derived)) <= conflict_tolerance(currency)
