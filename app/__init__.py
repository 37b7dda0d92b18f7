# --- app/__init__.py ---
import logging

from flask import Flask, jsonify

from .config import Config
from .extensions import db, jwt, cors, migrate
from .utils.api import api_error, api_ok
from .utils.errors import register_error_handlers


def _configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    app.logger.setLevel(level)

def _register_jwt_handlers():
    @jwt.unauthorized_loader
    def _missing_token(reason):
        return jsonify(api_error(reason, "UNAUTHORIZED")), 401

    @jwt.invalid_token_loader
    def _invalid_token(reason):
        return jsonify(api_error(reason, "UNAUTHORIZED")), 401

    @jwt.expired_token_loader
    def _expired_token(jwt_header, jwt_payload):
        return jsonify(api_error("Token has expired", "UNAUTHORIZED")), 401

def create_app(overrides=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    Config.init_app(app)

    _configure_logging(app)

    # Init extensions
    db.init_app(app)
    jwt.init_app(app)
    cors.init_app(app, resources={r"/api/*": {"origins": "*"}})
    migrate.init_app(app, db)
    _register_jwt_handlers()
    register_error_handlers(app)

    from .services.payment_gateway import StripeGateway
    app.extensions.setdefault("payment_gateway", StripeGateway.from_config(app.config))

    # Register blueprints
    from .auth import bp as auth_bp; app.register_blueprint(auth_bp)
    from .product import bp as product_bp; app.register_blueprint(product_bp)
    from .cart import bp as cart_bp; app.register_blueprint(cart_bp)
    from .coupon import bp as coupon_bp; app.register_blueprint(coupon_bp)
    from .order import bp as order_bp; app.register_blueprint(order_bp)
    from .payment import bp as payment_bp; app.register_blueprint(payment_bp)
    from .admin import bp as admin_bp; app.register_blueprint(admin_bp)
    from .user import bp as user_bp; app.register_blueprint(user_bp)
    from .notification import bp as notification_bp; app.register_blueprint(notification_bp)

    from .cli import register_cli
    register_cli(app)

    @app.get("/")
    def health():
        return jsonify(api_ok("API running"))

    if app.config.get("AUTO_CREATE_TABLES"):
        with app.app_context():
            db.create_all()

    return app
