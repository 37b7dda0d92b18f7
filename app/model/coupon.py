# --- app/model/coupon.py ---

from ..extensions import db
from sqlalchemy.sql import func
from ..services.pricing import FixedDiscount, PercentDiscount
from ..utils.dates import iso
from ..utils.money import D, to_float

DISCOUNT_TYPES = ("fixed", "percent")

class Coupon(db.Model):
    __tablename__ = "coupon"

    id = db.Column(db.Integer, primary_key=True)
    # stored uppercase; lookups are case-insensitive
    code = db.Column(db.String(64), unique=True, nullable=False, index=True)
    description = db.Column(db.String(500))

    # "percent" or "fixed"
    discount_type = db.Column(db.String(16), nullable=False, default="percent")
    discount_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    is_active = db.Column(db.Boolean, default=True, index=True)

    # Optional constraints
    min_purchase = db.Column(db.Numeric(12, 2), nullable=True)   # require cart subtotal >= this
    max_discount = db.Column(db.Numeric(12, 2), nullable=True)   # cap on computed discount
    valid_from = db.Column(db.DateTime, nullable=True)
    valid_to = db.Column(db.DateTime, nullable=True)

    usage_limit = db.Column(db.Integer, nullable=True)           # global usage cap
    times_used = db.Column(db.Integer, nullable=False, default=0)
    per_user_limit = db.Column(db.Integer, nullable=True)

    applicable_products = db.Column(db.JSON, nullable=True)      # allow-list of product ids
    excluded_products = db.Column(db.JSON, nullable=True)        # deny-list of product ids

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    def discount_rule(self):
        cap = D(self.max_discount) if self.max_discount is not None else None
        if self.discount_type == "percent":
            return PercentDiscount(D(self.discount_value), cap)
        if self.discount_type == "fixed":
            return FixedDiscount(D(self.discount_value), cap)
        raise ValueError(f"unknown discount type: {self.discount_type!r}")

    def as_api(self):
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "discount_type": self.discount_type,
            "discount_value": to_float(self.discount_value),
            "min_purchase": to_float(self.min_purchase),
            "max_discount": to_float(self.max_discount),
            "valid_from": iso(self.valid_from),
            "valid_to": iso(self.valid_to),
            "is_active": bool(self.is_active),
            "usage_limit": self.usage_limit,
            "times_used": self.times_used,
            "per_user_limit": self.per_user_limit,
            "applicable_products": list(self.applicable_products or []),
            "excluded_products": list(self.excluded_products or []),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
