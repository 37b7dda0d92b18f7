# app/utils/money.py

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

Money = Decimal
ZERO = Decimal("0")
CENT = Decimal("0.01")

def D(x) -> Money:
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x if x is not None else "0"))
    except InvalidOperation:
        raise ValueError(f"invalid money amount: {x!r}")

def round_money(x) -> Money:
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)

def to_float(x):
    return None if x is None else float(round_money(x))

def to_cents(x) -> int:
    return int((round_money(x) * 100).to_integral_value(rounding=ROUND_HALF_UP))

def from_cents(cents) -> Money:
    return round_money(D(cents or 0) / 100)
