# app/services/coupon_service.py
from __future__ import annotations
import logging
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import func, or_

from ..extensions import db
from ..model import Cart, Coupon, Order
from ..utils.api import to_bool, to_int
from ..utils.dates import parse_iso8601, utcnow
from ..utils.errors import NotFound, ValidationError
from ..utils.money import D, to_float
from .pricing import discount_for

logger = logging.getLogger(__name__)

Check = tuple[bool, Optional[str]]


def normalize_code(code) -> str:
    return str(code or "").strip().upper()

# ---- rules -----------------------------------------------------------------

def is_currently_valid(coupon: Coupon, now: datetime | None = None) -> Check:
    now = now or utcnow()
    if not coupon.is_active:
        return False, "Coupon is inactive"
    if coupon.valid_from and now < coupon.valid_from:
        return False, "Coupon not yet valid"
    if coupon.valid_to and now > coupon.valid_to:
        return False, "Coupon expired"
    if coupon.usage_limit is not None and (coupon.times_used or 0) >= coupon.usage_limit:
        return False, "Coupon usage limit reached"
    return True, None

def is_applicable_to_products(coupon: Coupon, product_ids) -> Check:
    ids = {str(pid) for pid in product_ids}

    allowed = {str(p) for p in (coupon.applicable_products or [])}
    if allowed and not ids <= allowed:
        return False, "Coupon is not applicable to some products in the cart"

    excluded = {str(p) for p in (coupon.excluded_products or [])}
    if excluded and ids & excluded:
        return False, "Coupon cannot be applied to one or more products"

    return True, None

def meets_min_purchase(coupon: Coupon, subtotal) -> Check:
    if coupon.min_purchase and D(subtotal) < D(coupon.min_purchase):
        return False, f"Minimum order amount for this coupon is {D(coupon.min_purchase):.2f}"
    return True, None

def compute_discount(coupon: Coupon, subtotal):
    return discount_for(coupon.discount_rule(), subtotal)

def validate_for_items(coupon: Coupon, subtotal, product_ids, now: datetime | None = None) -> Check:
    """Validity window/usage, then min purchase, then product lists. First failure wins."""
    for check in (
        lambda: is_currently_valid(coupon, now),
        lambda: meets_min_purchase(coupon, subtotal),
        lambda: is_applicable_to_products(coupon, product_ids),
    ):
        valid, reason = check()
        if not valid:
            return False, reason
    return True, None

def user_usage_count(user_id: int, code: str) -> int:
    # matched against the order snapshot, not a live join
    return (
        Order.query
        .filter(Order.user_id == user_id, Order.status != "cancelled", Order.coupon_code == code)
        .count()
    )

def applied_snapshot(coupon: Coupon, discount_amount) -> dict:
    return {
        "code": coupon.code,
        "discount_type": coupon.discount_type,
        "discount_value": to_float(coupon.discount_value),
        "discount_amount": to_float(discount_amount),
    }

# ---- store -----------------------------------------------------------------

def find_by_code(code) -> Coupon | None:
    code = normalize_code(code)
    if not code:
        return None
    return Coupon.query.filter(func.upper(Coupon.code) == code).first()

def find_active_by_code(code) -> Coupon | None:
    code = normalize_code(code)
    if len(code) < current_app.config.get("COUPON_MIN_CODE_LENGTH", 3):
        return None
    coupon = find_by_code(code)
    if not coupon:
        return None
    valid, _ = is_currently_valid(coupon)
    return coupon if valid else None

def increment_usage(coupon_id: int) -> None:
    # single atomic statement; raises on store failure
    Coupon.query.filter(Coupon.id == coupon_id).update(
        {Coupon.times_used: Coupon.times_used + 1}, synchronize_session=False
    )
    db.session.commit()

# ---- admin payloads --------------------------------------------------------

def _optional_money(data, key):
    v = data.get(key)
    if v is None or v == "":
        return None
    try:
        v = D(v)
    except ValueError:
        raise ValidationError(f"{key} must be numeric")
    if v < 0:
        raise ValidationError(f"{key} must be >= 0")
    return v

def _optional_int(data, key):
    v = data.get(key)
    if v is None or v == "":
        return None
    try:
        v = int(v)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")
    if v < 0:
        raise ValidationError(f"{key} must be >= 0")
    return v

def _optional_datetime(data, key):
    raw = data.get(key)
    if not raw:
        return None
    dt = parse_iso8601(raw)
    if not dt:
        raise ValidationError(f"Invalid datetime format for {key}")
    return dt

def _id_list(data, key):
    v = data.get(key)
    if v is None:
        return None
    if not isinstance(v, list):
        raise ValidationError(f"{key} must be a list of product ids")
    try:
        return [int(x) for x in v]
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a list of product ids")

def _apply_payload(c: Coupon, data: dict, partial: bool):
    if not partial or "discount_type" in data:
        dtype = (data.get("discount_type") or "").lower().strip()
        if dtype not in ("percent", "fixed"):
            raise ValidationError("discount_type must be 'percent' or 'fixed'")
        c.discount_type = dtype

    if not partial or "discount_value" in data:
        value = _optional_money(data, "discount_value")
        if value is None or value <= 0:
            raise ValidationError("discount_value must be > 0")
        c.discount_value = value

    if c.discount_type == "percent" and D(c.discount_value) > 100:
        raise ValidationError("percent discount must be <= 100")

    for key in ("min_purchase", "max_discount"):
        if not partial or key in data:
            setattr(c, key, _optional_money(data, key))
    for key in ("usage_limit", "per_user_limit"):
        if not partial or key in data:
            setattr(c, key, _optional_int(data, key))
    for key in ("valid_from", "valid_to"):
        if not partial or key in data:
            setattr(c, key, _optional_datetime(data, key))
    for key in ("applicable_products", "excluded_products"):
        if not partial or key in data:
            setattr(c, key, _id_list(data, key))

    if c.valid_from and c.valid_to and c.valid_from >= c.valid_to:
        raise ValidationError("valid_from must be before valid_to")

    if "is_active" in data:
        c.is_active = bool(data.get("is_active"))
    if "description" in data:
        c.description = (data.get("description") or None)

def create_coupon_from_payload(data: dict) -> Coupon:
    code = normalize_code(data.get("code"))
    if not code:
        raise ValidationError("code is required")
    if len(code) < current_app.config.get("COUPON_MIN_CODE_LENGTH", 3):
        raise ValidationError("code is too short")
    if find_by_code(code):
        raise ValidationError("Coupon code already exists")

    c = Coupon(code=code, is_active=True, times_used=0)
    _apply_payload(c, data, partial=False)
    db.session.add(c)
    db.session.commit()
    logger.info("Coupon created code=%s", c.code)
    return c

def update_coupon_from_payload(coupon_id: int, data: dict) -> Coupon:
    c = get_coupon(coupon_id)
    if "code" in data:
        raise ValidationError("coupon code cannot be changed once issued")
    _apply_payload(c, data, partial=True)
    db.session.commit()
    logger.info("Coupon updated code=%s", c.code)
    return c

def get_coupon(coupon_id: int) -> Coupon:
    c = db.session.get(Coupon, coupon_id)
    if not c:
        raise NotFound("Coupon not found")
    return c

def toggle_coupon(coupon_id: int) -> Coupon:
    c = get_coupon(coupon_id)
    c.is_active = not c.is_active
    db.session.commit()
    logger.info("Coupon toggled code=%s active=%s", c.code, c.is_active)
    return c

def delete_coupon(coupon_id: int) -> None:
    c = get_coupon(coupon_id)
    # orders keep their own snapshot; only live carts point at the row
    Cart.query.filter(Cart.coupon_id == c.id).update({Cart.coupon_id: None}, synchronize_session=False)
    db.session.delete(c)
    db.session.commit()
    logger.info("Coupon deleted code=%s", c.code)

def list_coupons(args):
    q = Coupon.query
    active = to_bool(args.get("active"))
    if active is not None:
        q = q.filter(Coupon.is_active.is_(active))
    search = (args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Coupon.code.ilike(like), Coupon.description.ilike(like)))

    page = max(to_int(args.get("page"), 1), 1)
    limit = min(max(to_int(args.get("limit"), 20), 1), 100)
    return q.order_by(Coupon.id.desc()).paginate(page=page, per_page=limit, error_out=False)
