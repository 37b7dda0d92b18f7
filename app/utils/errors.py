# --- app/utils/errors.py ---
import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

from .api import api_error

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Operational error raised by services; rendered as the standard error envelope."""
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message, status_code=None, code=None, data=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.data = data


class ValidationError(AppError):
    code = "VALIDATION_ERROR"

class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"

class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"

class InvalidState(AppError):
    code = "INVALID_STATE"

class InsufficientStock(AppError):
    code = "INSUFFICIENT_STOCK"

class ProductUnavailable(AppError):
    code = "PRODUCT_UNAVAILABLE"

class EmptyCart(AppError):
    code = "EMPTY_CART"

class TooManyItems(AppError):
    code = "TOO_MANY_ITEMS"

class CouponInvalid(AppError):
    code = "COUPON_INVALID"

class AmountMismatch(AppError):
    code = "AMOUNT_MISMATCH"

class AlreadyPaid(InvalidState):
    code = "ALREADY_PAID"

class AlreadyRequested(InvalidState):
    code = "ALREADY_REQUESTED"

class ReturnWindowExpired(InvalidState):
    code = "RETURN_WINDOW_EXPIRED"

class WebhookSignatureInvalid(AppError):
    code = "WEBHOOK_SIGNATURE_INVALID"

class UpstreamPaymentFailure(AppError):
    status_code = 502
    code = "UPSTREAM_PAYMENT_FAILURE"

class Internal(AppError):
    status_code = 500
    code = "INTERNAL"


def register_error_handlers(app):
    from ..extensions import db

    @app.errorhandler(AppError)
    def handle_app_error(e):
        # drop half-applied attribute changes from the failed request
        db.session.rollback()
        r = jsonify(api_error(e.message, e.code, e.data))
        r.status_code = e.status_code
        return r

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        r = jsonify(api_error(e.description or e.name, e.name.upper().replace(" ", "_")))
        r.status_code = e.code or 500
        return r

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error: %s", e)
        db.session.rollback()
        r = jsonify(api_error("Something went wrong", Internal.code))
        r.status_code = 500
        return r
