# app/coupon/routes.py
from __future__ import annotations
from flask import request

from . import bp
from ..services import coupon_service
from ..utils.api import ok, page_meta
from ..utils.decorators import role_required

ADMIN_ONLY = "Only administrators can manage coupons"

@bp.post("")
@role_required("admin", message=ADMIN_ONLY)
def create_coupon():
    data = request.get_json(silent=True) or {}
    c = coupon_service.create_coupon_from_payload(data)
    return ok("Coupon created", c.as_api(), status=201)

@bp.get("")
@role_required("admin", message=ADMIN_ONLY)
def list_coupons():
    """
    Query params:
      - active=true|false
      - search  (code or description)
      - page, limit
    """
    paged = coupon_service.list_coupons(request.args)
    return ok("coupons", [c.as_api() for c in paged.items], meta=page_meta(paged))

@bp.get("/<int:coupon_id>")
@role_required("admin", message=ADMIN_ONLY)
def get_coupon(coupon_id: int):
    return ok("coupon", coupon_service.get_coupon(coupon_id).as_api())

@bp.put("/<int:coupon_id>")
@role_required("admin", message=ADMIN_ONLY)
def update_coupon(coupon_id: int):
    data = request.get_json(silent=True) or {}
    c = coupon_service.update_coupon_from_payload(coupon_id, data)
    return ok("Coupon updated", c.as_api())

@bp.patch("/<int:coupon_id>/toggle")
@role_required("admin", message=ADMIN_ONLY)
def toggle_coupon(coupon_id: int):
    c = coupon_service.toggle_coupon(coupon_id)
    return ok("Coupon activated" if c.is_active else "Coupon deactivated", c.as_api())

@bp.delete("/<int:coupon_id>")
@role_required("admin", message=ADMIN_ONLY)
def delete_coupon(coupon_id: int):
    coupon_service.delete_coupon(coupon_id)
    return ok("Coupon deleted")
