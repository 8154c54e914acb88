"""
Conversions between human decimal strings and integer base units.

Amounts never pass through float: parsing uses Decimal for validation and the
scaling itself is integer arithmetic, so any magnitude the ledger can hold
(u128 balances included) survives unchanged.
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from txflow.errors import InvalidAmount

if TYPE_CHECKING:
    from txflow.assets import Asset

AMOUNT_RE = re.compile(r"(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)")


def to_base_units(human: str, precision: int) -> int:
    """
    Convert a positive decimal string to base units, flooring extra digits.

    Raises InvalidAmount for anything that is not a plain positive decimal
    or that floors to zero base units.
    """
    text = (human or "").strip()
    if not AMOUNT_RE.fullmatch(text):
        raise InvalidAmount(f"'{text}' is not a positive decimal number.")
    try:
        value = Decimal(text)
    except InvalidOperation as exc:
        raise InvalidAmount(f"'{text}' is not a positive decimal number.") from exc
    if not value.is_finite() or value <= 0:
        raise InvalidAmount("Amount must be a positive number.")

    whole, _, frac = text.partition(".")
    frac = (frac + "0" * precision)[:precision]
    base_units = int(whole or "0") * 10**precision + int(frac or "0")
    if base_units <= 0:
        raise InvalidAmount(f"Amount is below the smallest unit (10^-{precision}).")
    return base_units


def to_human(base_units: int, precision: int) -> str:
    if base_units < 0:
        raise ValueError("base_units must be non-negative")
    whole, frac = divmod(int(base_units), 10**precision)
    if precision == 0:
        return str(whole)
    return f"{whole}.{frac:0{precision}d}"


def format_amount(base_units: int, asset: Asset) -> str:
    return f"{to_human(base_units, asset.precision)} {asset.symbol}"
