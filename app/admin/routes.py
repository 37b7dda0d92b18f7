# app/admin/routes.py
from flask import request

from . import bp
from ..services import admin_service, order_service
from ..utils.api import ok, page_meta
from ..utils.decorators import current_user, role_required

# GET /api/admin/orders  (same filters as /api/orders/my, plus user_id)
@bp.get("/orders")
@role_required("admin")
def list_orders():
    user_id = request.args.get("user_id", type=int)
    paged = order_service.list_orders(request.args, user_id=user_id)
    return ok("orders", [o.as_api() for o in paged.items], meta=page_meta(paged))

@bp.put("/orders/<int:order_id>/pay")
@role_required("admin")
def mark_paid(order_id: int):
    order = admin_service.mark_paid(order_id, current_user())
    return ok("Order marked as paid", order.as_api())

@bp.put("/orders/<int:order_id>/deliver")
@role_required("admin")
def mark_delivered(order_id: int):
    order = admin_service.mark_delivered(order_id, current_user())
    return ok("Order marked as delivered", order.as_api())

# PUT /api/admin/orders/<id>/status  { status, notes? }
@bp.put("/orders/<int:order_id>/status")
@role_required("admin")
def update_status(order_id: int):
    data = request.get_json(silent=True) or {}
    order = admin_service.update_status(order_id, data.get("status"), current_user(), data.get("notes"))
    return ok("Order status updated", order.as_api())

# POST /api/admin/orders/<id>/refund  { reason? }
@bp.post("/orders/<int:order_id>/refund")
@role_required("admin")
def force_refund(order_id: int):
    data = request.get_json(silent=True) or {}
    order = admin_service.force_refund(order_id, current_user(), data.get("reason"))
    return ok("Order marked as refunded", order.as_api())

# PATCH /api/admin/orders/<id>/return  { return_status, notes? }
@bp.patch("/orders/<int:order_id>/return")
@role_required("admin")
def return_decision(order_id: int):
    data = request.get_json(silent=True) or {}
    order = admin_service.set_return_status(
        order_id, data.get("return_status"), current_user(), data.get("notes")
    )
    return ok("Return status updated", order.as_api())
