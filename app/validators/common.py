"""
Common validators for purchase event fields.

Each validator returns a tuple of (is_valid, parsed_value, error_message).
"""

from decimal import Decimal, InvalidOperation

from app.config.business_constants import (
    CURRENCY_ALIASES,
    CURRENCY_SCALE,
    MONEY_MAX_INTEGER_DIGITS,
    MONEY_STORE_SCALE,
    PRODUCT_KIND_ALIASES,
)


def fits_scale(amount: Decimal, places: int) -> bool:
    """
    Whether an amount is exactly representable with ``places`` decimals.

    Trailing zeros do not count: ``Decimal("1.500")`` fits two places.
    """
    return amount == amount.quantize(Decimal(1).scaleb(-places))


def validate_amount(
    value: object,
    max_scale: int = MONEY_STORE_SCALE,
    max_integer_digits: int = MONEY_MAX_INTEGER_DIGITS,
) -> tuple[bool, Decimal | None, str | None]:
    """
    Validate a purchase amount.

    Floats are rejected: amounts must arrive as Decimal, int or string.
    Amounts the money columns cannot hold exactly are rejected too, so
    the stored value is always the value commissions were derived from.

    Args:
        value: Raw amount
        max_scale: Most decimal places accepted
        max_integer_digits: Most digits accepted before the point

    Returns:
        Tuple of (is_valid, parsed_amount, error_message)

    Examples:
        >>> validate_amount("10000")
        (True, Decimal('10000'), None)
        >>> validate_amount("-5")
        (False, None, 'Amount must not be negative')
        >>> validate_amount("0.000000001")
        (False, None, 'Amount has more than 8 decimal places')
    """
    if value is None or isinstance(value, bool):
        return False, None, "Amount is required"

    if isinstance(value, float):
        return False, None, "Amount must be a decimal, not a float"

    try:
        amount = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        return False, None, "Amount must be a decimal number"

    if not amount.is_finite():
        return False, None, "Amount must be finite"

    if amount < 0:
        return False, None, "Amount must not be negative"

    if amount >= Decimal(10) ** max_integer_digits:
        return False, None, f"Amount has more than {max_integer_digits} integer digits"

    if not fits_scale(amount, max_scale):
        return False, None, f"Amount has more than {max_scale} decimal places"

    return True, amount, None


def validate_currency(value: object) -> tuple[bool, str | None, str | None]:
    """
    Validate and normalize a currency code.

    Legacy spellings ("naira", "ngn") map onto the canonical codes.
    """
    if not isinstance(value, str) or not value.strip():
        return False, None, "Currency is required"

    raw = value.strip()
    if raw in CURRENCY_SCALE:
        return True, raw, None

    normalized = CURRENCY_ALIASES.get(raw.lower())
    if normalized is None:
        return False, None, f"Unknown currency: {raw}"
    return True, normalized, None


def validate_product_kind(value: object) -> tuple[bool, str | None, str | None]:
    """Validate and normalize a product kind (share or cofounder)."""
    if not isinstance(value, str) or not value.strip():
        return False, None, "Product kind is required"

    normalized = PRODUCT_KIND_ALIASES.get(value.strip().lower().replace("_", ""))
    if normalized is None:
        return False, None, f"Unknown product kind: {value.strip()}"
    return True, normalized, None
