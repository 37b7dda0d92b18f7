# app/cart/routes.py
from __future__ import annotations
from flask import request

from . import bp
from ..services import cart_service
from ..utils.api import ok
from ..utils.decorators import auth_required, current_user

# Cart endpoints answer with the priced view, never the raw rows, so the
# client always sees totals recomputed against live products.

def _view(cart):
    return {"id": cart.id if cart else None, **cart_service.compute_totals(cart)}

# ---- routes ----------------------------------------------------------------

# GET /api/cart
@bp.get("")
@auth_required
def get_cart():
    cart = cart_service.get_or_create_cart(current_user().id)
    return ok("cart", _view(cart))

# POST /api/cart/items  { product_id, quantity }
@bp.post("/items")
@auth_required
def add_item():
    data = request.get_json(silent=True) or {}
    cart = cart_service.add_item(current_user().id, data.get("product_id"), data.get("quantity", 1))
    return ok("Item added to cart", _view(cart), status=201)

# PATCH /api/cart/items/<product_id>  { quantity }
@bp.patch("/items/<int:product_id>")
@auth_required
def update_item(product_id: int):
    data = request.get_json(silent=True) or {}
    cart = cart_service.update_item(current_user().id, product_id, data.get("quantity"))
    return ok("Cart item updated", _view(cart))

# DELETE /api/cart/items/<product_id>
@bp.delete("/items/<int:product_id>")
@auth_required
def remove_item(product_id: int):
    cart = cart_service.remove_item(current_user().id, product_id)
    return ok("Item removed from cart", _view(cart))

# DELETE /api/cart/items
@bp.delete("/items")
@auth_required
def clear_cart():
    cart = cart_service.clear(current_user().id)
    return ok("Cart cleared", _view(cart))

# POST /api/cart/coupon  { code }
@bp.post("/coupon")
@auth_required
def apply_coupon():
    data = request.get_json(silent=True) or {}
    cart = cart_service.apply_coupon(current_user().id, data.get("code"))
    return ok("Coupon applied", _view(cart))

# DELETE /api/cart/coupon
@bp.delete("/coupon")
@auth_required
def remove_coupon():
    cart = cart_service.remove_coupon(current_user().id)
    return ok("Coupon removed", _view(cart))
