# app/payment/routes.py
from flask import request

from . import bp
from ..services import payment_service
from ..utils.api import ok
from ..utils.decorators import auth_required, current_user, role_required

# POST /api/payment/process  { order_id, payment_method, payment_data }
@bp.post("/process")
@auth_required
def process_payment():
    data = request.get_json(silent=True) or {}
    order = payment_service.process_payment(
        data.get("order_id"),
        data.get("payment_method"),
        data.get("payment_data") or {},
        current_user(),
    )
    return ok("Payment processed successfully", order.as_api())

# POST /api/payment/create-intent  { order_id }
@bp.post("/create-intent")
@auth_required
def create_intent():
    data = request.get_json(silent=True) or {}
    result = payment_service.create_payment_intent(data.get("order_id"), current_user())
    return ok("Payment intent created", result)

# POST /api/payment/create-stripe-session  { order_id }
@bp.post("/create-stripe-session")
@auth_required
def create_stripe_session():
    data = request.get_json(silent=True) or {}
    result = payment_service.create_checkout_session(data.get("order_id"), current_user())
    return ok("Checkout session created", result)

# GET/POST /api/payment/payment-methods  { payment_method_id }
@bp.get("/payment-methods")
@auth_required
def list_payment_methods():
    return ok("payment methods", payment_service.list_payment_methods(current_user()))

@bp.post("/payment-methods")
@auth_required
def save_payment_method():
    data = request.get_json(silent=True) or {}
    method = payment_service.save_payment_method(current_user(), data.get("payment_method_id"))
    return ok("Payment method saved successfully", method)

@bp.delete("/payment-methods/<payment_method_id>")
@auth_required
def remove_payment_method(payment_method_id: str):
    payment_service.remove_payment_method(current_user(), payment_method_id)
    return ok("Payment method removed successfully")

# POST /api/payment/webhook  (raw body, Stripe-Signature header)
@bp.post("/webhook")
def webhook():
    result = payment_service.handle_webhook(
        request.get_data(cache=False),
        request.headers.get("Stripe-Signature"),
    )
    return ok("Webhook received", result)

# POST /api/payment/refund  { order_id, amount?, reason? }
@bp.post("/refund")
@role_required("admin", message="Only administrators can process refunds")
def refund():
    data = request.get_json(silent=True) or {}
    result = payment_service.process_refund(
        data.get("order_id"),
        data.get("amount"),
        data.get("reason"),
        current_user(),
    )
    return ok("Refund processed successfully", result)
