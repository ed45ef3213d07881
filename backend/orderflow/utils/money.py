from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Below this, a computed share is treated as nothing to record.
DUST = Decimal("0.01")


def to_money(value) -> Decimal:
    if isinstance(value, Decimal):
        parsed = value
    else:
        try:
            parsed = Decimal(str(value if value is not None else 0))
        except (InvalidOperation, ValueError):
            parsed = Decimal("0")
    if not parsed.is_finite():
        parsed = Decimal("0")
    return parsed.quantize(CENT, rounding=ROUND_HALF_UP)


def non_negative(value) -> Decimal:
    amount = to_money(value)
    return amount if amount > ZERO else ZERO


def money_float(value) -> float:
    return float(to_money(value))


def is_dust(value) -> bool:
    return to_money(value) < DUST
