"""
Referral handle validation.

A single pure predicate shared by the chain resolver and the public
handle check. Handles arrive from the host platform's signup links and
may carry pasted URLs, markup or numeric IDs.
"""

from app.config.business_constants import HANDLE_MAX_LENGTH


# Substrings that mark a pasted link or markup instead of a handle
FORBIDDEN_TOKENS = (
    "http://",
    "https://",
    "www.",
    "<script",
    "javascript:",
    "<",
    ">",
)

PATH_SEPARATORS = ("/", "\\")


def validate_referrer_handle(value: str | None) -> tuple[bool, str | None, str | None]:
    """
    Validate a referrer handle.

    Args:
        value: Raw handle as stored on the participant

    Returns:
        Tuple of (is_valid, normalized_handle, error_reason)

    Examples:
        >>> validate_referrer_handle("ada_lovelace")
        (True, 'ada_lovelace', None)
        >>> validate_referrer_handle("12345")
        (False, None, 'numeric')
        >>> validate_referrer_handle("https://example.com/ref/ada")
        (False, None, 'url_or_script')
    """
    if value is None:
        return False, None, "empty"

    handle = value.strip()
    if not handle:
        return False, None, "empty"

    if len(handle) > HANDLE_MAX_LENGTH:
        return False, None, "too_long"

    lowered = handle.lower()
    if any(token in lowered for token in FORBIDDEN_TOKENS):
        return False, None, "url_or_script"

    if any(sep in handle for sep in PATH_SEPARATORS):
        return False, None, "path_separator"

    if handle.isdigit():
        return False, None, "numeric"

    return True, handle, None


def is_valid_referrer_handle(value: str | None) -> bool:
    """Shorthand predicate for validate_referrer_handle."""
    return validate_referrer_handle(value)[0]
