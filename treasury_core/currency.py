"""
Currency Support Module

ISO 4217 currency codes with their minor-unit precision. The engine keeps
every amount as an integer count of minor units (kobo, cents); conversion to
Decimal only happens for display and provider payloads.
"""

from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Union


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    NGN = ("NGN", 2)  # Nigerian Naira, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    KES = ("KES", 2)  # Kenyan Shilling, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code"""
        for currency in cls:
            if currency.code == code.upper():
                return currency
        raise ValueError(f"Unsupported currency: {code}")


def to_major_units(amount: int, currency: Currency) -> Decimal:
    """Convert integer minor units into a Decimal in major units"""
    return (Decimal(amount) / (Decimal(10) ** currency.precision)).quantize(
        Decimal('0.1') ** currency.precision
    )


def to_minor_units(amount: Union[Decimal, str, int], currency: Currency) -> int:
    """Convert a major-unit amount into integer minor units"""
    value = Decimal(str(amount)) * (Decimal(10) ** currency.precision)
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def format_amount(amount: int, currency: Currency) -> str:
    """Format minor units for display, e.g. ``NGN 1,234.50``"""
    major = to_major_units(amount, currency)
    if currency.precision == 0:
        return f"{currency.code} {major:,.0f}"
    return f"{currency.code} {major:,.{currency.precision}f}"
