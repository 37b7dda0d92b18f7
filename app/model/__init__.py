# ------ app/model/__init__.py ------

from .user import User, Address
from .product import Product, ProductImage
from .coupon import Coupon
from .cart import Cart, CartItem
from .notification import Notification
from .order import Order, OrderItem

__all__ = [
    "User",
    "Address",
    "Product",
    "ProductImage",
    "Coupon",
    "Cart",
    "CartItem",
    "Notification",
    "Order",
    "OrderItem",
]
