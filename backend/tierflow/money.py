# Overview: Fixed-point money helpers; amounts are integer minor units (paise/cents).

from __future__ import annotations

from decimal import Decimal


# Maximum single amount: 9,999,999.99 (999,999,999 minor units)
# This prevents database overflow issues and nonsensical prices
MAX_AMOUNT_CENTS = 999_999_999

_TWO_PLACES = Decimal("0.01")


def cents_to_decimal(cents: int | None) -> Decimal:
    """Exact decimal value of an integer minor-unit amount."""
    return (Decimal(int(cents or 0)) / 100).quantize(_TWO_PLACES)


def format_cents(cents: int | None) -> str:
    """Render minor units as a two-place decimal string ("1000.00")."""
    return str(cents_to_decimal(cents))
