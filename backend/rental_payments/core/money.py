"""Decimal amounts <-> provider minor units."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from rental_payments.core.errors import ValidationError

# Currencies the provider charges in whole units.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF",
        "CLP",
        "DJF",
        "GNF",
        "JPY",
        "KMF",
        "KRW",
        "MGA",
        "PYG",
        "RWF",
        "UGX",
        "VND",
        "VUV",
        "XAF",
        "XOF",
        "XPF",
    }
)

_CENT = Decimal("0.01")
_UNIT = Decimal("1")


def normalize_currency(currency: str) -> str:
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Invalid currency code: {currency!r}")
    return code


def is_zero_decimal(currency: str) -> bool:
    return normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES


def _as_decimal(amount: Any) -> Decimal:
    if isinstance(amount, float):
        amount = str(amount)
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    return value


def quantize_amount(amount: Any, currency: str) -> Decimal:
    """Round a decimal amount to the precision the currency is stored with."""

    exponent = _UNIT if is_zero_decimal(currency) else _CENT
    return _as_decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any, currency: str) -> int:
    """Convert a decimal amount to the integer the provider expects."""

    value = _as_decimal(amount)
    if not is_zero_decimal(currency):
        value = value * 100
    return int(value.quantize(_UNIT, rounding=ROUND_HALF_UP))


def from_minor_units(units: int, currency: str) -> Decimal:
    """Convert provider minor units back to a decimal amount."""

    if isinstance(units, bool) or not isinstance(units, int):
        raise ValidationError(f"Minor units must be an integer, got {units!r}")
    if is_zero_decimal(currency):
        return Decimal(units)
    return (Decimal(units) / 100).quantize(_CENT)


__all__ = [
    "ZERO_DECIMAL_CURRENCIES",
    "from_minor_units",
    "is_zero_decimal",
    "normalize_currency",
    "quantize_amount",
    "to_minor_units",
]
