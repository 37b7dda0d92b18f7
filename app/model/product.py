# app/model/product.py
from ..extensions import db
from sqlalchemy.sql import func
from ..utils.money import to_float

class Product(db.Model):
    __tablename__ = "product"
    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(255), index=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    description = db.Column(db.Text)

    # final (post-promotion) unit price; captured fresh at checkout
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    stock = db.Column(db.Integer, nullable=False, default=0)
    sales_count = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, default=True, index=True)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    images = db.relationship(
        "ProductImage",
        backref="product",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ProductImage.id.asc()",
    )

    def main_image(self):
        for img in self.images:
            if img.main:
                return img.image_url
        return self.images[0].image_url if self.images else None

    def as_api(self):
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "price": to_float(self.price),
            "stock": self.stock,
            "sales_count": self.sales_count,
            "is_active": bool(self.is_active),
            "images": [img.as_api() for img in self.images],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

class ProductImage(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False, index=True)
    image_url = db.Column(db.String(1024))
    main = db.Column(db.Boolean, default=False)

    def as_api(self):
        return {
            "id": self.id,
            "main": self.main,
            "image_url": self.image_url,
        }
