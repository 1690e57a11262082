"""
Input validation functions for the Material Lot Tracker.

This module provides validation and parsing for quantities and free-text
fields received from callers:
- Quantity parsing into Decimal (never float)
- Positive / non-negative checks
- String sanitizing
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from .constants import QUANTITY_PLACES

ERROR_REQUIRED_FIELD = "This field is required"
ERROR_INVALID_NUMBER = "Must be a valid number"
ERROR_INVALID_POSITIVE = "Must be greater than zero"
ERROR_INVALID_NON_NEGATIVE = "Must be zero or greater"


def parse_quantity(value: Any) -> Optional[Decimal]:
    """
    Parse a value into a Decimal quantity.

    Floats go through str() so 0.1 stays 0.1 instead of its binary
    expansion. Non-finite values (NaN, Infinity) are rejected.

    Args:
        value: int, float, str or Decimal

    Returns:
        Parsed Decimal, or None if the value is not a finite number
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not result.is_finite():
        return None
    return result


def quantize_quantity(value: Decimal) -> Decimal:
    """Round a quantity to storage precision (3 places)."""
    return value.quantize(QUANTITY_PLACES)


def validate_positive_quantity(value: Any, field_name: str = "Quantity") -> Tuple[bool, str]:
    """
    Validate that a value is a positive quantity (> 0).

    Args:
        value: The value to validate
        field_name: Name of the field for error messages

    Returns:
        Tuple of (is_valid, error_message)
    """
    quantity = parse_quantity(value)
    if quantity is None:
        return False, f"{field_name}: {ERROR_INVALID_NUMBER}"
    if quantity <= 0:
        return False, f"{field_name}: {ERROR_INVALID_POSITIVE}"
    return True, ""


def validate_non_negative_quantity(value: Any, field_name: str = "Quantity") -> Tuple[bool, str]:
    """
    Validate that a value is a non-negative quantity (>= 0).

    Args:
        value: The value to validate
        field_name: Name of the field for error messages

    Returns:
        Tuple of (is_valid, error_message)
    """
    quantity = parse_quantity(value)
    if quantity is None:
        return False, f"{field_name}: {ERROR_INVALID_NUMBER}"
    if quantity < 0:
        return False, f"{field_name}: {ERROR_INVALID_NON_NEGATIVE}"
    return True, ""


def validate_required_string(value: Optional[str], field_name: str = "Field") -> Tuple[bool, str]:
    """
    Validate that a string field is not empty.

    Args:
        value: The string value to validate
        field_name: Name of the field for error messages

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return False, f"{field_name}: {ERROR_REQUIRED_FIELD}"
    return True, ""


def sanitize_string(value: Optional[str]) -> Optional[str]:
    """
    Strip whitespace and convert empty strings to None.

    Args:
        value: The string value to sanitize

    Returns:
        Sanitized string or None
    """
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None
