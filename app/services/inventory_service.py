# app/services/inventory_service.py
"""
Product counters (stock, sales) and coupon usage as single-statement updates.

Order creation, cancellation and refunds call these after the primary row is
committed. Each call commits on its own; a failure is logged with enough
context to reconcile by hand (see the ``reconcile-counters`` CLI command) and
never undoes the primary write.
"""
import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..model import Coupon, Order, OrderItem, Product
from . import coupon_service

logger = logging.getLogger(__name__)


def decrement_stock(product_id: int, qty: int) -> bool:
    """Conditional decrement; False means the row had less than ``qty`` left."""
    n = Product.query.filter(Product.id == product_id, Product.stock >= qty).update(
        {Product.stock: Product.stock - qty}, synchronize_session=False
    )
    db.session.commit()
    return n == 1

def increment_stock(product_id: int, qty: int) -> bool:
    n = Product.query.filter(Product.id == product_id).update(
        {Product.stock: Product.stock + qty}, synchronize_session=False
    )
    db.session.commit()
    return n == 1

def increase_sales(product_id: int, qty: int) -> bool:
    n = Product.query.filter(Product.id == product_id).update(
        {Product.sales_count: Product.sales_count + qty}, synchronize_session=False
    )
    db.session.commit()
    return n == 1


# ---- best-effort side effects ----------------------------------------------

def apply_order_counters(order: Order) -> None:
    for item in order.items:
        try:
            if not decrement_stock(item.product_id, item.quantity):
                logger.error(
                    "Oversell detected after order creation order=%s product=%s qty=%s",
                    order.id, item.product_id, item.quantity,
                )
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(
                "Stock update failed order=%s product=%s qty=%s op=decrement_stock: %s",
                order.id, item.product_id, item.quantity, e,
            )
        try:
            increase_sales(item.product_id, item.quantity)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(
                "Sales update failed order=%s product=%s qty=%s op=increase_sales: %s",
                order.id, item.product_id, item.quantity, e,
            )

def record_coupon_usage(order: Order, coupon_id: int) -> None:
    try:
        coupon_service.increment_usage(coupon_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(
            "Increment coupon usage failed order=%s coupon=%s op=increment_usage: %s",
            order.id, coupon_id, e,
        )

def restock_order(order: Order, reason: str) -> None:
    for item in order.items:
        try:
            if not increment_stock(item.product_id, item.quantity):
                logger.error(
                    "Restock skipped, product missing order=%s product=%s op=restock_%s",
                    order.id, item.product_id, reason,
                )
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(
                "Restock after %s failed order=%s product=%s qty=%s: %s",
                reason, order.id, item.product_id, item.quantity, e,
            )


# ---- reconciliation --------------------------------------------------------

def reconcile_counters() -> dict:
    """Recompute sales_count and times_used from order rows. Returns rows corrected."""
    # sales are counted at checkout and never taken back, so every order counts
    sold = dict(
        db.session.query(OrderItem.product_id, func.sum(OrderItem.quantity))
        .join(Order, Order.id == OrderItem.order_id)
        .group_by(OrderItem.product_id)
        .all()
    )
    products_fixed = 0
    for p in Product.query.all():
        expected = int(sold.get(p.id) or 0)
        if p.sales_count != expected:
            logger.info("Reconcile sales product=%s %s -> %s", p.id, p.sales_count, expected)
            p.sales_count = expected
            products_fixed += 1

    # cancelled orders keep their coupon spent, same as checkout does
    used = dict(
        db.session.query(Order.coupon_code, func.count(Order.id))
        .filter(Order.coupon_code.isnot(None))
        .group_by(Order.coupon_code)
        .all()
    )
    coupons_fixed = 0
    for c in Coupon.query.all():
        expected = int(used.get(c.code) or 0)
        if c.times_used != expected:
            logger.info("Reconcile coupon usage code=%s %s -> %s", c.code, c.times_used, expected)
            c.times_used = expected
            coupons_fixed += 1

    db.session.commit()
    return {"products": products_fixed, "coupons": coupons_fixed}
