"""
Test suite for currency module

Amounts are integer minor units; Decimal only appears at the display edge.
"""

import pytest
from decimal import Decimal

from treasury_core.currency import Currency, format_amount, to_major_units, to_minor_units


class TestCurrency:

    def test_from_code(self):
        assert Currency.from_code("ngn") == Currency.NGN
        assert Currency.NGN.precision == 2
        assert Currency.JPY.precision == 0

    def test_unknown_code(self):
        with pytest.raises(ValueError):
            Currency.from_code("XYZ")


class TestConversion:

    def test_to_major_units(self):
        assert to_major_units(123_450, Currency.NGN) == Decimal("1234.50")
        assert to_major_units(500, Currency.JPY) == Decimal("500")

    def test_to_minor_units_rounds_half_up(self):
        assert to_minor_units("10.005", Currency.USD) == 1_001
        assert to_minor_units(Decimal("0.01"), Currency.NGN) == 1
        assert to_minor_units(25, Currency.NGN) == 2_500

    def test_format_amount(self):
        assert format_amount(123_450, Currency.NGN) == "NGN 1,234.50"
        assert format_amount(1_500, Currency.JPY) == "JPY 1,500"
