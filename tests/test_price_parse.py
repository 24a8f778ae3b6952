"""Tests for locale-aware price parsing."""

from __future__ import annotations

from decimal import Decimal

import pytest

from pricewatch.config import ErrorCategory
from pricewatch.errors import PriceParseError
from pricewatch.utils.price_parse import parse_price


class TestParsePrice:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("$1,234.56", Decimal("1234.56")),
            ("1.234,56 €", Decimal("1234.56")),
            ("1 234,56 zł", Decimal("1234.56")),
            ("CHF 1'234.50", Decimal("1234.50")),
            ("12,99", Decimal("12.99")),
            ("1.299", Decimal("1299")),
            ("0.999", Decimal("0.999")),
            ("Price: 49", Decimal("49")),
            ("US $19.99", Decimal("19.99")),
        ],
    )
    def test_formats(self, text: str, expected: Decimal) -> None:
        assert parse_price(text) == expected

    def test_first_number_wins(self) -> None:
        """Sale price precedes list price on most product pages."""
        assert parse_price("€19.99 €24.99") == Decimal("19.99")

    def test_repeated_separator_is_grouping(self) -> None:
        assert parse_price("1.234.567") == Decimal("1234567")

    @pytest.mark.parametrize("text", [None, "", "   ", "Call for price"])
    def test_unparseable_raises(self, text: str | None) -> None:
        with pytest.raises(PriceParseError) as exc_info:
            parse_price(text)
        assert exc_info.value.category == ErrorCategory.PARSE
        assert exc_info.value.code == "PRICE_PARSE_FAILED"

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("-5.00", Decimal("-5.00")),
            ("-€5", Decimal("-5")),
            ("−$12.50", Decimal("-12.50")),
            ("€ -3,99", Decimal("-3.99")),
        ],
    )
    def test_leading_minus_is_kept(self, text: str, expected: Decimal) -> None:
        assert parse_price(text) == expected

    def test_spaced_dash_is_not_a_sign(self) -> None:
        assert parse_price("Sale - $5.00") == Decimal("5.00")
