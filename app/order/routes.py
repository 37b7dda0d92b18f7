# app/order/routes.py
from flask import request

from . import bp
from ..services import order_service
from ..utils.api import ok, page_meta
from ..utils.decorators import auth_required, current_user

# POST /api/orders
@bp.post("")
@auth_required
def create_order():
    """
    Body:
      - shipping_address {full_name, address, city, state, postal_code, country, phone_number?}
        or shipping_address_id
      - payment_method  stripe|paypal|cod (default stripe)
      - idempotency_key (optional; also read from the Idempotency-Key header)
    """
    data = request.get_json(silent=True) or {}
    key = data.get("idempotency_key") or request.headers.get("Idempotency-Key")

    order, created = order_service.create_order(
        current_user(),
        shipping_address=data.get("shipping_address"),
        shipping_address_id=data.get("shipping_address_id"),
        payment_method=data.get("payment_method") or "stripe",
        idempotency_key=key,
    )
    if not created:
        return ok("Order already exists", order.as_api())
    return ok("Order created successfully", order.as_api(), status=201)

# GET /api/orders/my
@bp.get("/my")
@auth_required
def my_orders():
    """
    Query params:
      - status, is_paid, is_delivered
      - min_total, max_total
      - created_from, created_to (ISO 8601)
      - q (product name)
      - sort=-created_at|created_at|total_price|-total_price|status
      - page, limit (max 50)
    """
    paged = order_service.list_orders(request.args, user_id=current_user().id)
    return ok("orders", [o.as_api() for o in paged.items], meta=page_meta(paged))

@bp.get("/<int:order_id>")
@auth_required
def get_order(order_id: int):
    return ok("order", order_service.get_order(order_id, current_user()).as_api())

@bp.get("/<int:order_id>/payment-status")
@auth_required
def payment_status(order_id: int):
    return ok("payment status", order_service.payment_status(order_id, current_user()))

@bp.put("/<int:order_id>/cancel")
@auth_required
def cancel_order(order_id: int):
    order = order_service.cancel_order(order_id, current_user())
    return ok("Order cancelled", order.as_api())

@bp.put("/<int:order_id>/return")
@auth_required
def request_return(order_id: int):
    order = order_service.request_return(order_id, current_user())
    return ok("Return requested", order.as_api())
