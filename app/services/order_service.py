# app/services/order_service.py
"""
Checkout orchestration: cart -> immutable, priced order.

Validation happens against fresh cart and product rows before anything is
written. Once the order row is committed the remaining steps (stock, sales,
coupon usage, cart clearing, confirmation) are best-effort and logged.
"""
from __future__ import annotations
import logging
import secrets
import time
from datetime import timedelta

from flask import current_app
from sqlalchemy import asc, desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..model import Address, Order, OrderItem, Product, User
from ..model.order import PAYMENT_METHODS
from ..utils.api import to_bool, to_int
from ..utils.dates import parse_iso8601, utcnow
from ..utils.errors import (
    AlreadyRequested,
    CouponInvalid,
    EmptyCart,
    Forbidden,
    InsufficientStock,
    Internal,
    InvalidState,
    NotFound,
    ProductUnavailable,
    ReturnWindowExpired,
    TooManyItems,
    ValidationError,
)
from ..utils.money import D, ZERO, round_money
from . import cart_service, coupon_service, inventory_service, notification_service
from .pricing import PricingRules, calculate_order_prices, line_total

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("full_name", "address", "city", "state", "postal_code", "country")

SORT_FIELDS = {
    "created_at": Order.created_at,
    "total_price": Order.total_price,
    "status": Order.status,
    "updated_at": Order.updated_at,
}

# ---- helpers ---------------------------------------------------------------

def _gen_order_code() -> str:
    return "ORD-" + utcnow().strftime("%Y%m%d-%H%M%S") + "-" + secrets.token_hex(3).upper()

def _gen_idempotency_key(user_id: int) -> str:
    return f"order_{user_id}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"

def validate_shipping_address(address) -> dict:
    if not address or not isinstance(address, dict):
        raise ValidationError("Shipping address is required")
    for field in ADDRESS_FIELDS:
        if not str(address.get(field) or "").strip():
            raise ValidationError(f"Shipping address {field} is required")
    cleaned = {f: str(address[f]).strip() for f in ADDRESS_FIELDS}
    cleaned["phone_number"] = (str(address.get("phone_number")).strip()
                               if address.get("phone_number") else None)
    return cleaned

def load_address(user_id: int, address_id) -> dict:
    aid = to_int(address_id)
    if aid is None:
        raise ValidationError("Invalid shipping_address_id")
    addr = Address.query.filter_by(id=aid, user_id=user_id).first()
    if not addr:
        raise NotFound("Shipping address not found")
    return addr.as_shipping()

def resolve_shipping_address(user_id: int, shipping_address=None, shipping_address_id=None) -> dict:
    if shipping_address:
        return validate_shipping_address(shipping_address)
    if shipping_address_id:
        return validate_shipping_address(load_address(user_id, shipping_address_id))
    raise ValidationError("Shipping address is required (provide shipping_address or shipping_address_id)")

def ensure_can_access(order: Order | None, user: User) -> Order:
    if not order:
        raise NotFound("Order not found")
    if order.user_id != user.id and not user.is_admin:
        raise Forbidden("Not authorized to access this order")
    return order

def get_order(order_id, user: User) -> Order:
    oid = to_int(order_id)
    if oid is None:
        raise ValidationError("Invalid order ID")
    return ensure_can_access(db.session.get(Order, oid), user)

def find_by_idempotency_key(user_id: int, key: str) -> Order | None:
    return Order.query.filter_by(user_id=user_id, idempotency_key=key).first()

# ---- checkout --------------------------------------------------------------

def _snapshot_lines(cart):
    """Fresh product read for every cart line; returns (lines, items_price)."""
    ids = [ci.product_id for ci in cart.items]
    products = {
        p.id: p
        for p in Product.query.filter(Product.id.in_(ids)).populate_existing().all()
    }

    lines, removed, out_of_stock = [], [], []
    items_price = ZERO
    for ci in cart.items:
        p = products.get(ci.product_id)
        qty = int(ci.quantity or 0)
        if not p or not p.is_active:
            removed.append(ci.product_id)
            continue
        if qty <= 0:
            continue
        if p.stock < qty:
            out_of_stock.append({"product_id": p.id, "available": p.stock, "requested": qty})
            continue

        total = line_total(p.price, qty)
        items_price += total
        lines.append({
            "product_id": p.id,
            "name": p.name,
            "image_url": p.main_image(),
            "unit_price": round_money(p.price),
            "quantity": qty,
            "line_total": total,
        })

    # never a partial order: the user fixes the cart and retries
    if removed:
        raise ProductUnavailable(
            "One or more products in your cart are no longer available. Please review your cart.",
            data={"removed": removed},
        )
    if out_of_stock:
        raise InsufficientStock(
            "Some items in your cart do not have enough stock. Please adjust quantities.",
            data={"out_of_stock": out_of_stock},
        )
    if not lines:
        raise EmptyCart("No valid items left in cart to create an order.")
    return lines, round_money(items_price)

def _validate_coupon_at_checkout(coupon, user_id: int, items_price, product_ids):
    now = utcnow()
    valid, reason = coupon_service.is_currently_valid(coupon, now)
    if not valid:
        raise CouponInvalid(f"Coupon is not valid: {reason}")

    valid, reason = coupon_service.meets_min_purchase(coupon, items_price)
    if not valid:
        raise CouponInvalid(reason)

    valid, reason = coupon_service.is_applicable_to_products(coupon, product_ids)
    if not valid:
        raise CouponInvalid(reason)

    if coupon.per_user_limit:
        used = coupon_service.user_usage_count(user_id, coupon.code)
        if used >= coupon.per_user_limit:
            raise CouponInvalid("You have already used this coupon the maximum allowed times")

    return coupon_service.compute_discount(coupon, items_price)

def create_order(user: User, shipping_address=None, shipping_address_id=None,
                 payment_method="stripe", idempotency_key=None) -> tuple[Order, bool]:
    """Returns (order, created). ``created`` is False when an idempotent replay matched."""
    address = resolve_shipping_address(user.id, shipping_address, shipping_address_id)

    payment_method = (payment_method or "stripe").strip().lower()
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment method")

    if idempotency_key:
        idempotency_key = str(idempotency_key).strip()[:128]
        existing = find_by_idempotency_key(user.id, idempotency_key)
        if existing:
            logger.info("Idempotent order reused user=%s order=%s", user.id, existing.id)
            return existing, False

    cart = cart_service.load_cart(user.id)
    if not cart or not cart.items:
        raise EmptyCart("Cart is empty. Please add items before checkout.")
    max_items = current_app.config.get("MAX_ORDER_ITEMS", 50)
    if len(cart.items) > max_items:
        raise TooManyItems(f"Cannot create order with more than {max_items} items")

    lines, items_price = _snapshot_lines(cart)

    coupon = cart.coupon
    discount = ZERO
    coupon_applied = None
    if coupon is not None:
        discount = _validate_coupon_at_checkout(
            coupon, user.id, items_price, [ln["product_id"] for ln in lines]
        )
        coupon_applied = coupon_service.applied_snapshot(coupon, discount)

    prices = calculate_order_prices(items_price, discount, PricingRules.from_config(current_app.config))

    key = idempotency_key or _gen_idempotency_key(user.id)
    order = Order(
        code=_gen_order_code(),
        user_id=user.id,
        idempotency_key=key,
        status="pending",
        return_status="none",
        shipping_address=address,
        payment_method=payment_method,
        items_price=prices.items_price,
        discount_amount=prices.discount_amount,
        shipping_price=prices.shipping_price,
        tax_price=prices.tax_price,
        total_price=prices.total_price,
        coupon_applied=coupon_applied,
        coupon_code=coupon.code if coupon is not None else None,
        is_paid=False,
        is_delivered=False,
        items=[OrderItem(**ln) for ln in lines],
    )
    coupon_id = coupon.id if coupon is not None else None

    db.session.add(order)
    try:
        db.session.commit()
    except IntegrityError:
        # a concurrent request with the same key won the insert
        db.session.rollback()
        winner = find_by_idempotency_key(user.id, key)
        if winner:
            logger.info("Idempotent order reused after race user=%s order=%s", user.id, winner.id)
            return winner, False
        logger.exception("Order insert failed user=%s", user.id)
        raise Internal("Failed to create order")

    logger.info("Order created order=%s user=%s total=%s", order.id, user.id, order.total_price)

    inventory_service.apply_order_counters(order)
    if coupon_id is not None:
        inventory_service.record_coupon_usage(order, coupon_id)

    try:
        cart_service.clear_cart(cart)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Failed to clear cart after order order=%s cart=%s: %s", order.id, cart.id, e)

    notification_service.send_order_confirmation(user, order)
    return order, True

# ---- listing ---------------------------------------------------------------

def _money_arg(args, key):
    v = args.get(key)
    if v in (None, ""):
        return None
    try:
        return D(v)
    except ValueError:
        raise ValidationError(f"{key} must be numeric")

def _date_arg(args, key):
    v = args.get(key)
    if not v:
        return None
    dt = parse_iso8601(v)
    if not dt:
        raise ValidationError(f"Invalid date for {key}")
    return dt

def list_orders(args, user_id: int | None = None, max_limit: int = 50):
    """
    Query params:
      - status, is_paid, is_delivered
      - min_total, max_total
      - created_from, created_to (ISO 8601)
      - q  (product name contained in any line)
      - sort=-created_at|created_at|total_price|status (prefix '-' for desc)
      - page, limit
    """
    q = Order.query
    if user_id is not None:
        q = q.filter(Order.user_id == user_id)

    status = args.get("status")
    if status:
        q = q.filter(Order.status == status)
    is_paid = to_bool(args.get("is_paid"))
    if is_paid is not None:
        q = q.filter(Order.is_paid.is_(is_paid))
    is_delivered = to_bool(args.get("is_delivered"))
    if is_delivered is not None:
        q = q.filter(Order.is_delivered.is_(is_delivered))

    min_total = _money_arg(args, "min_total")
    max_total = _money_arg(args, "max_total")
    if min_total is not None:
        q = q.filter(Order.total_price >= min_total)
    if max_total is not None:
        q = q.filter(Order.total_price <= max_total)

    created_from = _date_arg(args, "created_from")
    created_to = _date_arg(args, "created_to")
    if created_from and created_to and created_from > created_to:
        raise ValidationError("created_from must be before created_to")
    if created_from:
        q = q.filter(Order.created_at >= created_from)
    if created_to:
        q = q.filter(Order.created_at <= created_to)

    search = (args.get("q") or "").strip()
    if search:
        q = q.filter(Order.items.any(OrderItem.name.ilike(f"%{search}%")))

    sort_raw = (args.get("sort") or "-created_at").strip()
    direction = desc if sort_raw.startswith("-") else asc
    column = SORT_FIELDS.get(sort_raw.lstrip("-"), Order.created_at)
    q = q.order_by(direction(column), desc(Order.id))

    page = max(to_int(args.get("page"), 1), 1)
    limit = min(max(to_int(args.get("limit"), 10), 1), max_limit)
    return q.paginate(page=page, per_page=limit, error_out=False)

# ---- lifecycle -------------------------------------------------------------

def cancel_order(order_id, user: User) -> Order:
    order = get_order(order_id, user)
    if order.is_paid:
        raise InvalidState("Cannot cancel a paid order")
    if order.status != "pending":
        raise InvalidState("Only pending orders can be cancelled")

    n = Order.query.filter(
        Order.id == order.id, Order.status == "pending", Order.is_paid.is_(False)
    ).update({Order.status: "cancelled", Order.updated_at: utcnow()}, synchronize_session=False)
    db.session.commit()
    if n != 1:
        raise InvalidState("Order changed while cancelling; please retry")

    logger.info("Order cancelled order=%s by=%s", order.id, user.id)
    inventory_service.restock_order(order, "cancel")
    return order

def request_return(order_id, user: User) -> Order:
    order = get_order(order_id, user)
    if not order.is_delivered:
        raise InvalidState("Cannot request return for undelivered order")

    now = utcnow()
    delivered_at = order.delivered_at or order.updated_at or order.created_at
    window = timedelta(days=current_app.config.get("RETURN_WINDOW_DAYS", 30))
    if delivered_at and now - delivered_at > window:
        raise ReturnWindowExpired("Return window has expired")

    if order.return_status != "none":
        raise AlreadyRequested("Return has already been requested for this order")

    n = Order.query.filter(Order.id == order.id, Order.return_status == "none").update(
        {Order.return_status: "requested", Order.return_requested_at: now}, synchronize_session=False
    )
    db.session.commit()
    if n != 1:
        raise AlreadyRequested("Return has already been requested for this order")

    logger.info("Return requested order=%s by=%s", order.id, user.id)
    return order

def payment_status(order_id, user: User) -> dict:
    order = get_order(order_id, user)
    return {
        "is_paid": bool(order.is_paid),
        "status": order.status,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
    }
