from __future__ import annotations

from decimal import Decimal

import pytest
from flask_jwt_extended import create_access_token
from werkzeug.security import generate_password_hash

from app import create_app
from app.extensions import db
from app.model import Coupon, Product, ProductImage, User
from app.services import cart_service, order_service

from .fakes import WEBHOOK_SECRET, FakeGateway

ADDRESS = {
    "full_name": "Dara Sok",
    "address": "12 Norodom Blvd",
    "city": "Phnom Penh",
    "state": "PP",
    "postal_code": "12000",
    "country": "KH",
    "phone_number": "+85512345678",
}
PASSWORD = "secret123"


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "AUTO_CREATE_TABLES": False,
        "NOTIFY_ASYNC": False,
        "JWT_SECRET_KEY": "test-jwt-secret-with-enough-length-for-hs256",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
    })
    app.extensions["payment_gateway"] = FakeGateway()

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gateway(app) -> FakeGateway:
    return app.extensions["payment_gateway"]


# ---- factories -------------------------------------------------------------

@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(role: str = "user", email: str | None = None) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            name=f"User {counter['n']}",
            password_hash=generate_password_hash(PASSWORD),
            role=role,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def user(make_user) -> User:
    return make_user()


@pytest.fixture
def admin(make_user) -> User:
    return make_user(role="admin", email="admin@example.com")


@pytest.fixture
def make_product(app):
    counter = {"n": 0}

    def _make(price="20.00", stock: int = 5, name: str | None = None, active: bool = True) -> Product:
        counter["n"] += 1
        name = name or f"Product {counter['n']}"
        product = Product(
            name=name,
            slug=name.lower().replace(" ", "-"),
            price=Decimal(str(price)),
            stock=stock,
            sales_count=0,
            is_active=active,
        )
        product.images.append(ProductImage(image_url=f"/img/{counter['n']}.jpg", main=True))
        db.session.add(product)
        db.session.commit()
        return product

    return _make


@pytest.fixture
def make_coupon(app):
    def _make(code: str = "SAVE10", discount_type: str = "percent", discount_value="10", **fields) -> Coupon:
        for key in ("min_purchase", "max_discount"):
            if fields.get(key) is not None:
                fields[key] = Decimal(str(fields[key]))
        coupon = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=Decimal(str(discount_value)),
            is_active=fields.pop("is_active", True),
            times_used=fields.pop("times_used", 0),
            **fields,
        )
        db.session.add(coupon)
        db.session.commit()
        return coupon

    return _make


@pytest.fixture
def fill_cart(app):
    def _fill(user: User, *lines, coupon: str | None = None):
        for product, qty in lines:
            cart_service.add_item(user.id, product.id, qty)
        if coupon:
            cart_service.apply_coupon(user.id, coupon)
        return cart_service.load_cart(user.id)

    return _fill


@pytest.fixture
def place_order(fill_cart):
    def _place(user: User, *lines, coupon: str | None = None, payment_method: str = "stripe", key=None):
        fill_cart(user, *lines, coupon=coupon)
        order, _ = order_service.create_order(
            user, shipping_address=dict(ADDRESS), payment_method=payment_method, idempotency_key=key
        )
        return order

    return _place


@pytest.fixture
def auth_headers(app):
    def _headers(user: User) -> dict:
        token = create_access_token(identity=str(user.id))
        return {"Authorization": f"Bearer {token}"}

    return _headers
