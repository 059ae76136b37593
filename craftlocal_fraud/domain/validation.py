"""
Centralized validation rules for inbound requests.

Each validator returns (is_valid, error_message) so callers decide whether
to raise or report.
"""
from typing import Any, Optional, Tuple


def validate_amount(amount: Any, max_val: Optional[float] = None) -> Tuple[bool, str]:
    """
    Validate a transaction amount.

    Returns:
        (is_valid, error_message)
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return False, "Amount must be a number"

    if amount != amount:  # NaN
        return False, "Amount must be a number"

    if amount < 0:
        return False, "Amount cannot be negative"

    if max_val is not None and amount > max_val:
        return False, f"Amount cannot exceed {max_val}"

    return True, ""


def validate_identifier(value: Any, label: str = "Identifier") -> Tuple[bool, str]:
    """User, seller, listing and signal ids: non-empty, no whitespace, <= 64 chars."""
    if value is None or not str(value).strip():
        return False, f"{label} cannot be empty"

    text = str(value)
    if len(text) > 64:
        return False, f"{label} cannot exceed 64 characters"

    if any(c.isspace() for c in text):
        return False, f"{label} cannot contain whitespace"

    return True, ""


def require(result: Tuple[bool, str]) -> None:
    """Raise ValueError for a failed validation result."""
    ok, message = result
    if not ok:
        raise ValueError(message)
