# --- app/models/user.py ---
from sqlalchemy.sql import func
from ..extensions import db

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(180), nullable=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False, default="")
    role = db.Column(db.String(50), nullable=False, default="user", index=True)  # roles: user, admin
    stripe_customer_id = db.Column(db.String(64), nullable=True)
    payment_methods = db.Column(db.JSON, nullable=True)  # saved Stripe payment method ids
    created_at = db.Column(db.DateTime, server_default=func.now())

    addresses = db.relationship(
        "Address",
        backref="user",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Address.id.asc()",
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def as_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role
            }


class Address(db.Model):
    __tablename__ = "user_addresses"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    full_name = db.Column(db.String(180), nullable=False)
    address = db.Column(db.String(255), nullable=False)
    city = db.Column(db.String(120), nullable=False)
    state = db.Column(db.String(120), nullable=False)
    postal_code = db.Column(db.String(20), nullable=False)
    country = db.Column(db.String(64), nullable=False)
    phone_number = db.Column(db.String(50))
    is_default = db.Column(db.Boolean, default=False)

    def as_shipping(self) -> dict:
        # denormalized snapshot stored on orders
        return {
            "full_name": self.full_name,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
            "phone_number": self.phone_number,
        }

    def as_api(self):
        return {"id": self.id, "is_default": bool(self.is_default), **self.as_shipping()}
