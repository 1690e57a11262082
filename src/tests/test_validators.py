"""
Tests for input validation functions.

Tests cover the validators module:
- Quantity parsing (Decimal, never float)
- Positive / non-negative quantity validation
- Required strings and sanitizing
"""

from decimal import Decimal

import pytest

from src.utils import validators


class TestParseQuantity:
    """Test quantity parsing."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            (5, Decimal("5")),
            ("2.5", Decimal("2.5")),
            (" 7 ", Decimal("7")),
            (Decimal("1.125"), Decimal("1.125")),
            (0.1, Decimal("0.1")),
        ],
    )
    def test_parse_valid(self, value, expected):
        """Valid numbers parse to the exact Decimal."""
        assert validators.parse_quantity(value) == expected

    @pytest.mark.parametrize("value", [None, "", "abc", True, "NaN", "Infinity", [1]])
    def test_parse_invalid(self, value):
        """Non-numbers, booleans and non-finite values parse to None."""
        assert validators.parse_quantity(value) is None

    def test_float_goes_through_str(self):
        """0.1 stays 0.1 instead of its binary expansion."""
        assert str(validators.parse_quantity(0.1)) == "0.1"

    def test_quantize(self):
        """Quantities are stored with three places."""
        assert validators.quantize_quantity(Decimal("1.23456")) == Decimal("1.235")


class TestQuantityValidation:
    """Test quantity validation functions."""

    def test_validate_positive_valid(self):
        """Positive quantity passes."""
        assert validators.validate_positive_quantity(Decimal("0.5")) == (True, "")

    def test_validate_positive_zero(self):
        """Zero is not positive."""
        is_valid, error = validators.validate_positive_quantity(0, "Output quantity")
        assert not is_valid
        assert error == "Output quantity: Must be greater than zero"

    def test_validate_positive_negative(self):
        """Negative quantity fails."""
        is_valid, _ = validators.validate_positive_quantity("-3")
        assert not is_valid

    def test_validate_positive_invalid_string(self):
        """Invalid string reports an invalid number."""
        is_valid, error = validators.validate_positive_quantity("ten")
        assert not is_valid
        assert error == "Quantity: Must be a valid number"

    def test_validate_non_negative_zero(self):
        """Zero is non-negative."""
        assert validators.validate_non_negative_quantity(0) == (True, "")

    def test_validate_non_negative_negative(self):
        """Negative quantity fails."""
        is_valid, error = validators.validate_non_negative_quantity(Decimal("-0.001"))
        assert not is_valid
        assert "zero or greater" in error


class TestStringValidation:
    """Test string validation functions."""

    def test_validate_required_string_valid(self):
        """Non-empty string passes."""
        assert validators.validate_required_string("PB-1", "Batch number") == (True, "")

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_validate_required_string_missing(self, value):
        """None, empty and whitespace-only strings fail."""
        is_valid, error = validators.validate_required_string(value, "Reason")
        assert not is_valid
        assert error == "Reason: This field is required"

    def test_sanitize_string(self):
        """Whitespace is stripped; empty becomes None."""
        assert validators.sanitize_string("  lot 7 ") == "lot 7"
        assert validators.sanitize_string("   ") is None
        assert validators.sanitize_string(None) is None
