"""
Pricing engine: pure money arithmetic for carts and orders.

Sequence is fixed:
  1) subtotal = sum(unit_price * quantity)
  2) discount applied to subtotal
  3) shipping decided on the discounted amount
  4) tax charged on the discounted amount
  5) total = discounted + shipping + tax, floored at zero
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, NamedTuple

from ..utils.money import D, ZERO, round_money, to_float

HUNDRED = Decimal("100")


# ---- discount variants ------------------------------------------------------

@dataclass(frozen=True)
class FixedDiscount:
    amount: Decimal
    cap: Decimal | None = None

@dataclass(frozen=True)
class PercentDiscount:
    percent: Decimal
    cap: Decimal | None = None


def discount_for(rule: FixedDiscount | PercentDiscount, subtotal) -> Decimal:
    base = D(subtotal)
    if base <= 0:
        return ZERO

    if isinstance(rule, PercentDiscount):
        # misconfigured coupons give nothing rather than more than the order
        if rule.percent > HUNDRED:
            return ZERO
        amount = base * rule.percent / HUNDRED
    elif isinstance(rule, FixedDiscount):
        amount = D(rule.amount)
    else:
        raise TypeError(f"unsupported discount rule: {rule!r}")

    if rule.cap is not None and rule.cap >= 0 and amount > rule.cap:
        amount = rule.cap
    if amount > base:
        amount = base
    if amount < 0:
        amount = ZERO
    return round_money(amount)


# ---- order prices -----------------------------------------------------------

@dataclass(frozen=True)
class PricingRules:
    free_shipping_threshold: Decimal = Decimal("100")
    flat_shipping_rate: Decimal = Decimal("10")
    tax_rate: Decimal = Decimal("0.10")

    @classmethod
    def from_config(cls, config) -> PricingRules:
        return cls(
            free_shipping_threshold=D(config.get("FREE_SHIPPING_THRESHOLD", 100)),
            flat_shipping_rate=D(config.get("FLAT_SHIPPING_RATE", 10)),
            tax_rate=D(config.get("TAX_RATE", "0.10")),
        )


class OrderPrices(NamedTuple):
    items_price: Decimal
    discount_amount: Decimal
    shipping_price: Decimal
    tax_price: Decimal
    total_price: Decimal

    def as_api(self):
        return {k: to_float(v) for k, v in self._asdict().items()}


def line_total(unit_price, quantity) -> Decimal:
    return round_money(D(unit_price) * int(quantity))

def subtotal(lines: Iterable[tuple]) -> Decimal:
    """lines: iterable of (unit_price, quantity)."""
    return round_money(sum((D(p) * int(q) for p, q in lines), ZERO))

def calculate_order_prices(items_price, discount_amount=0, rules: PricingRules | None = None) -> OrderPrices:
    rules = rules or PricingRules()
    items = round_money(items_price)
    discount = round_money(discount_amount)
    after_discount = max(ZERO, items - discount)

    shipping = ZERO if after_discount >= rules.free_shipping_threshold else round_money(rules.flat_shipping_rate)
    tax = round_money(after_discount * rules.tax_rate)
    total = round_money(max(ZERO, after_discount + shipping + tax))

    return OrderPrices(
        items_price=items,
        discount_amount=discount,
        shipping_price=shipping,
        tax_price=tax,
        total_price=total,
    )
