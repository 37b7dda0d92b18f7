import os
from datetime import timedelta

class Config:
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False
    ENV = os.getenv("FLASK_ENV", "development")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    AUTO_CREATE_TABLES = True

    # JWT
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "dev-secret-change-me")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=1)

    # Checkout / pricing
    FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", 100))
    FLAT_SHIPPING_RATE = float(os.getenv("FLAT_SHIPPING_RATE", 10))
    TAX_RATE = float(os.getenv("TAX_RATE", 0.10))
    RETURN_WINDOW_DAYS = int(os.getenv("RETURN_WINDOW_DAYS", 30))
    MAX_ORDER_ITEMS = int(os.getenv("MAX_ORDER_ITEMS", 50))
    CART_MAX_QUANTITY = int(os.getenv("CART_MAX_QUANTITY", 10))
    COUPON_MIN_CODE_LENGTH = 3

    # Payments
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
    PAYMENT_AMOUNT_TOLERANCE = 0.01
    MAX_PAYMENT_AMOUNT = 10000
    PAYMENT_INTENT_MAX_AGE_HOURS = 24
    WEBHOOK_TOLERANCE_SECONDS = 300  # 5 minutes
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")

    # Notifications
    NOTIFY_ASYNC = os.getenv("NOTIFY_ASYNC", "true").lower() == "true"
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

    @staticmethod
    def init_app(app):
        if app.config.get("SQLALCHEMY_DATABASE_URI"):
            return
        if not os.getenv("DATABASE_URL"):
            os.makedirs(app.instance_path, exist_ok=True)
            app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        else:
            app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL")
