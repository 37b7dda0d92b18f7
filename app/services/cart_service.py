from __future__ import annotations
import logging

from flask import current_app

from ..extensions import db
from ..model import Cart, CartItem, Product
from ..utils.dates import utcnow
from ..utils.errors import (
    CouponInvalid,
    InsufficientStock,
    NotFound,
    ProductUnavailable,
    ValidationError,
)
from ..utils.money import D, ZERO, round_money, to_float
from . import coupon_service
from .pricing import PricingRules, calculate_order_prices, line_total

logger = logging.getLogger(__name__)

MIN_QUANTITY = 1

def max_quantity() -> int:
    return int(current_app.config.get("CART_MAX_QUANTITY", 10))

def validate_quantity(raw, field: str = "quantity") -> int:
    # bools are ints in Python; reject them explicitly
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise ValidationError(f"{field} must be an integer")
        raw = int(raw)
    try:
        qty = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a valid number")
    if qty < MIN_QUANTITY:
        raise ValidationError(f"{field} must be at least {MIN_QUANTITY}")
    if qty > max_quantity():
        raise ValidationError(f"{field} must not exceed {max_quantity()}")
    return qty

# ---- loading ---------------------------------------------------------------

def load_cart(user_id: int) -> Cart | None:
    return Cart.query.filter_by(user_id=user_id).first()

def get_or_create_cart(user_id: int) -> Cart:
    cart = load_cart(user_id)
    if not cart:
        cart = Cart(user_id=user_id)
        db.session.add(cart)
        db.session.commit()
    return cart

def _live_product(product_id) -> Product:
    try:
        product_id = int(product_id)
    except (TypeError, ValueError):
        raise ValidationError("Valid product ID is required")
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFound("Product not found")
    return product

def _check_available(product: Product, qty: int):
    if not product.is_active:
        raise ProductUnavailable("Product not available")
    if product.stock < qty:
        raise InsufficientStock(f"Requested quantity exceeds available stock (max {product.stock})")

# ---- item mutations --------------------------------------------------------

def add_item(user_id: int, product_id, quantity=1) -> Cart:
    qty = validate_quantity(quantity)
    product = _live_product(product_id)
    if not product.is_active:
        raise ProductUnavailable("Product not available")

    cart = get_or_create_cart(user_id)
    item = cart.find_item(product.id)

    new_qty = qty
    if item:
        # excess beyond the per-line cap is dropped, not an error
        new_qty = min(item.quantity + qty, max_quantity())

    _check_available(product, new_qty)

    if item:
        item.quantity = new_qty
    else:
        cart.items.append(CartItem(product_id=product.id, quantity=new_qty))
    db.session.commit()
    logger.info("Cart item added user=%s product=%s qty=%s", user_id, product.id, new_qty)
    return cart

def update_item(user_id: int, product_id, quantity) -> Cart:
    qty = validate_quantity(quantity)
    cart = get_or_create_cart(user_id)
    product = _live_product(product_id)

    item = cart.find_item(product.id)
    if not item:
        raise NotFound("Product not found in cart")

    _check_available(product, qty)
    item.quantity = qty
    db.session.commit()
    logger.info("Cart item updated user=%s product=%s qty=%s", user_id, product.id, qty)
    return cart

def remove_item(user_id: int, product_id) -> Cart:
    cart = get_or_create_cart(user_id)
    try:
        product_id = int(product_id)
    except (TypeError, ValueError):
        raise ValidationError("Valid product ID is required")

    item = cart.find_item(product_id)
    if not item:
        raise NotFound("Product not found in cart")

    cart.items.remove(item)
    db.session.commit()
    logger.info("Cart item removed user=%s product=%s", user_id, product_id)
    return cart

def clear_cart(cart: Cart) -> None:
    """Drop every item and the coupon reference in one commit."""
    cart.items.clear()
    cart.coupon_id = None
    cart.coupon = None
    db.session.commit()

def clear(user_id: int) -> Cart:
    cart = get_or_create_cart(user_id)
    clear_cart(cart)
    logger.info("Cart cleared user=%s", user_id)
    return cart

# ---- coupon ----------------------------------------------------------------

def apply_coupon(user_id: int, code) -> Cart:
    code = coupon_service.normalize_code(code)
    if not code:
        raise ValidationError("Coupon code is required")

    cart = get_or_create_cart(user_id)
    if not cart.items:
        raise ValidationError("Cannot apply coupon to an empty cart")

    coupon = coupon_service.find_active_by_code(code)
    if not coupon:
        raise CouponInvalid("Invalid or expired coupon")

    totals = compute_totals(cart, coupon=coupon)
    if totals["coupon_error"]:
        raise CouponInvalid(f"Coupon cannot be applied: {totals['coupon_error']}")

    cart.coupon = coupon
    db.session.commit()
    logger.info("Coupon applied user=%s code=%s", user_id, coupon.code)
    return cart

def remove_coupon(user_id: int) -> Cart:
    cart = get_or_create_cart(user_id)
    cart.coupon_id = None
    cart.coupon = None
    db.session.commit()
    logger.info("Coupon removed user=%s", user_id)
    return cart

# ---- totals ----------------------------------------------------------------

def compute_totals(cart: Cart | None, coupon=None, now=None) -> dict:
    """
    Read-only pricing of a cart against live product data.
    Unavailable products and stock shortfalls become warnings; an attached
    coupon that no longer validates is reported in ``coupon_error`` and left
    attached. Passing ``coupon`` previews one that is not attached yet.
    """
    coupon = coupon if coupon is not None else (cart.coupon if cart else None)
    items, warnings = [], []
    subtotal = ZERO

    for ci in (cart.items if cart else []):
        product = ci.product
        if not product or not product.is_active:
            warnings.append({
                "type": "product",
                "product_id": ci.product_id,
                "message": "Product no longer available",
            })
            continue

        line = line_total(product.price, ci.quantity)
        subtotal += line
        items.append({
            "product": {
                "id": product.id,
                "name": product.name,
                "image": product.main_image(),
            },
            "quantity": ci.quantity,
            "unit_price": to_float(product.price),
            "line_total": to_float(line),
            "available_stock": product.stock,
        })
        if product.stock < ci.quantity:
            warnings.append({
                "type": "stock",
                "product_id": product.id,
                "message": f"Only {product.stock} unit(s) available for {product.name}",
            })

    subtotal = round_money(subtotal)
    discount = ZERO
    coupon_summary = None
    coupon_error = None

    if coupon is not None:
        product_ids = [it["product"]["id"] for it in items]
        valid, reason = coupon_service.validate_for_items(coupon, subtotal, product_ids, now or utcnow())
        if valid:
            discount = coupon_service.compute_discount(coupon, subtotal)
            coupon_summary = coupon_service.applied_snapshot(coupon, discount)
        else:
            coupon_error = reason

    estimate = calculate_order_prices(subtotal, discount, PricingRules.from_config(current_app.config))

    return {
        "items": items,
        "subtotal": to_float(subtotal),
        "discount": to_float(discount),
        "final_price": to_float(max(ZERO, D(subtotal) - discount)),
        "estimate": estimate.as_api(),
        "coupon": coupon_summary,
        "coupon_error": coupon_error,
        "warnings": warnings,
    }
