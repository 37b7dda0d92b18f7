# app/model/cart.py
from __future__ import annotations
from sqlalchemy.sql import func
from ..extensions import db

class Cart(db.Model):
    __tablename__ = "cart"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, unique=True, index=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupon.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    items = db.relationship(
        "CartItem",
        backref="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CartItem.id.asc()"
    )

    # reference, not a copy: edits to the coupon show up on the next read
    coupon = db.relationship("Coupon", lazy="joined")

    def find_item(self, product_id: int) -> CartItem | None:
        return next((i for i in self.items if i.product_id == product_id), None)

    def as_api(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "coupon_code": self.coupon.code if self.coupon else None,
            "items": [i.as_api() for i in self.items],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class CartItem(db.Model):
    __tablename__ = "cart_item"
    __table_args__ = (db.UniqueConstraint("cart_id", "product_id", name="uq_cart_item_product"),)

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("cart.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    product = db.relationship("Product", lazy="joined")

    def as_api(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
        }
