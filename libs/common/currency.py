"""Currency conversion utilities.

Internal storage unit: integer minor units of the charged currency
(cents for USD, centavos for BRL). Amounts never travel as floats.

Exchange rates are quoted as units of the charged currency per one unit of
the base currency, e.g. ``5.6`` for BRL when the base currency is USD.

Conversion chain
----------------
charged minor ÷ rate → base minor (round half-up)
base minor × rate    → charged minor (within rate / 2 minor units)
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

# ISO 4217 currencies without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset({"jpy", "krw", "vnd", "clp", "pyg", "xof"})


def minor_units_per_major(currency: str) -> int:
    """Minor units in one major unit (100 for USD/BRL, 1 for JPY)."""
    return 1 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 100


def parse_exchange_rate(raw: Union[str, float, Decimal, None]) -> Optional[Decimal]:
    """Parse a metadata exchange rate. Returns None for missing or non-positive values."""
    if raw is None or raw == "":
        return None
    try:
        rate = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate <= 0:
        return None
    return rate


def to_base_minor(amount_minor: int, rate: Optional[Decimal]) -> int:
    """Convert a charged amount to the base currency. ``rate=None`` means same currency."""
    if rate is None:
        return int(amount_minor)
    converted = Decimal(int(amount_minor)) / rate
    return int(converted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_base_minor(base_minor: int, rate: Optional[Decimal]) -> int:
    """Inverse of ``to_base_minor``."""
    if rate is None:
        return int(base_minor)
    converted = Decimal(int(base_minor)) * rate
    return int(converted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def minor_to_major(amount_minor: int, currency: str) -> Decimal:
    """Display helper: 12345 cents -> Decimal("123.45")."""
    return Decimal(int(amount_minor)) / minor_units_per_major(currency)
