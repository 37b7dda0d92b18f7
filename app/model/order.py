from sqlalchemy.sql import func
from ..extensions import db
from ..utils.dates import iso
from ..utils.money import to_float

ORDER_STATUSES = ("pending", "processing", "paid", "shipped", "delivered", "cancelled", "refunded")
RETURN_STATUSES = ("none", "requested", "approved", "rejected", "completed")
PAYMENT_METHODS = ("stripe", "paypal", "cod")

# status -> statuses reachable from it
ORDER_TRANSITIONS = {
    "pending": {"processing", "paid", "cancelled"},
    "processing": {"paid", "shipped"},
    "paid": {"shipped", "refunded"},
    "shipped": {"delivered", "refunded"},
    "delivered": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
}

RETURN_TRANSITIONS = {
    "none": {"requested"},
    "requested": {"approved", "rejected"},
    "approved": {"completed"},
    "rejected": set(),
    "completed": set(),
}

class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency"),
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), unique=True, index=True)  # e.g., "ORD-20251022-143005-9F2A1C"
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    idempotency_key = db.Column(db.String(128), nullable=False)

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    return_status = db.Column(db.String(20), nullable=False, default="none")
    return_requested_at = db.Column(db.DateTime)

    # Customer snapshot
    shipping_address = db.Column(db.JSON, nullable=False)
    payment_method = db.Column(db.String(20), nullable=False, default="stripe")

    # Money snapshot, computed once at creation
    items_price = db.Column(db.Numeric(12, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    shipping_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(12, 2), nullable=False)

    # {code, discount_type, discount_value, discount_amount}; coupon_code mirrors it for lookups
    coupon_applied = db.Column(db.JSON)
    coupon_code = db.Column(db.String(64), index=True)

    is_paid = db.Column(db.Boolean, nullable=False, default=False, index=True)
    paid_at = db.Column(db.DateTime)
    payment_result = db.Column(db.JSON)
    is_delivered = db.Column(db.Boolean, nullable=False, default=False)
    delivered_at = db.Column(db.DateTime)
    notes = db.Column(db.Text)

    created_at = db.Column(db.DateTime, server_default=func.now(), index=True)
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    user = db.relationship("User", lazy="joined")
    items = db.relationship(
        "OrderItem",
        backref="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id.asc()",
    )

    def can_transition(self, to_status: str) -> bool:
        return to_status in ORDER_TRANSITIONS.get(self.status, set())

    def as_api(self):
        return {
            "id": self.id,
            "code": self.code,
            "user_id": self.user_id,
            "status": self.status,
            "return_status": self.return_status,
            "return_requested_at": iso(self.return_requested_at),
            "shipping_address": self.shipping_address,
            "payment_method": self.payment_method,
            "money": {
                "items_price": to_float(self.items_price),
                "discount_amount": to_float(self.discount_amount),
                "shipping_price": to_float(self.shipping_price),
                "tax_price": to_float(self.tax_price),
                "total_price": to_float(self.total_price),
            },
            "coupon_applied": self.coupon_applied,
            "is_paid": bool(self.is_paid),
            "paid_at": iso(self.paid_at),
            "payment_result": self.payment_result,
            "is_delivered": bool(self.is_delivered),
            "delivered_at": iso(self.delivered_at),
            "idempotency_key": self.idempotency_key,
            "items": [i.as_api() for i in self.items],
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

class OrderItem(db.Model):
    """Immutable snapshot of a purchased line; product edits never touch it."""
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    product_id = db.Column(db.Integer, index=True)
    name = db.Column(db.String(255), nullable=False)
    image_url = db.Column(db.String(1024))
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    line_total = db.Column(db.Numeric(12, 2), nullable=False)

    def as_api(self):
        return {
            "product_id": self.product_id,
            "name": self.name,
            "image_url": self.image_url,
            "unit_price": to_float(self.unit_price),
            "quantity": self.quantity,
            "line_total": to_float(self.line_total),
        }
