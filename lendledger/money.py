"""Decimal helpers shared by the calculators and the ledger.

Money is always ``Decimal`` rounded half-up to the cent; intermediate
arithmetic runs in a 34-digit context so schedule math never touches binary
floating point.
"""

from decimal import ROUND_HALF_UP, Context, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

MONEY_CONTEXT = Context(prec=34, rounding=ROUND_HALF_UP)


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def round_money(value, places: Decimal = CENT) -> Decimal:
    """Round half-up to *places* (cents by default)."""
    return to_decimal(value).quantize(places, rounding=ROUND_HALF_UP)
