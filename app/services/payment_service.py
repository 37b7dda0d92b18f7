# app/services/payment_service.py
"""
Payment reconciliation: synchronous confirmation, Stripe webhooks and
admin refunds all converge on the same guarded row updates, so a payment or
refund is applied at most once whichever path lands first.
"""
from __future__ import annotations
import logging
import re
import time

from flask import current_app

from ..extensions import db
from ..model import Order, User
from ..model.order import PAYMENT_METHODS
from ..utils.api import to_int
from ..utils.dates import utcnow
from ..utils.errors import (
    AlreadyPaid,
    AmountMismatch,
    Forbidden,
    InvalidState,
    NotFound,
    ValidationError,
)
from ..utils.money import D, from_cents, round_money, to_cents, to_float
from . import inventory_service, order_service
from .payment_gateway import get_gateway

logger = logging.getLogger(__name__)

CLOSED_STATUSES = ("cancelled", "refunded")
PAYABLE_STATUSES = ("pending", "processing")
REFUNDABLE_STATUSES = ("paid", "shipped", "delivered")
STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")

_METADATA_UNSAFE = re.compile(r"[^\w\s@.-]")

# ---- helpers ---------------------------------------------------------------

def sanitize_metadata(values: dict) -> dict:
    out = {}
    for k, v in (values or {}).items():
        if v is None:
            continue
        out[k] = _METADATA_UNSAFE.sub("", str(v)).strip()[:500]
    return out

def validate_amount(paid, total, tolerance=None):
    tolerance = D(current_app.config.get("PAYMENT_AMOUNT_TOLERANCE", "0.01") if tolerance is None else tolerance)
    paid, total = round_money(paid), round_money(total)
    if abs(paid - total) > tolerance:
        raise AmountMismatch(f"Payment amount ({paid}) does not match order total ({total})")

def _ensure_payable(order: Order):
    if order.is_paid:
        raise AlreadyPaid("Order is already paid")
    if order.status in CLOSED_STATUSES:
        raise InvalidState("Cannot pay for cancelled or refunded order")

def _payable_total(order: Order):
    total = D(order.total_price)
    if total <= 0 or total > D(current_app.config.get("MAX_PAYMENT_AMOUNT", 10000)):
        raise ValidationError("Invalid order amount")
    return total

def _ensure_customer(user: User) -> str:
    """Provider customer id for ``user``, created and stored on first use."""
    if not user.stripe_customer_id:
        customer = get_gateway().create_customer(
            email=user.email,
            name=user.name,
            metadata=sanitize_metadata({"user_id": user.id}),
        )
        user.stripe_customer_id = customer.id
        db.session.commit()
    return user.stripe_customer_id

def apply_paid_update(order: Order, payment_result: dict, method: str) -> bool:
    """
    Single guarded UPDATE: only an unpaid order still in the status we read
    moves. False means another path got there first.
    """
    status = "paid" if order.status in PAYABLE_STATUSES else order.status
    now = utcnow()
    n = Order.query.filter(
        Order.id == order.id,
        Order.is_paid.is_(False),
        Order.status == order.status,
        Order.status.notin_(CLOSED_STATUSES),
    ).update({
        Order.is_paid: True,
        Order.paid_at: now,
        Order.payment_method: method,
        Order.payment_result: payment_result,
        Order.status: status,
        Order.updated_at: now,
    }, synchronize_session=False)
    db.session.commit()
    return n == 1

def _mark_cod_pending(order: Order, payment_result: dict) -> bool:
    now = utcnow()
    n = Order.query.filter(
        Order.id == order.id,
        Order.is_paid.is_(False),
        Order.status == "pending",
    ).update({
        Order.payment_method: "cod",
        Order.payment_result: payment_result,
        Order.status: "processing",
        Order.updated_at: now,
    }, synchronize_session=False)
    db.session.commit()
    return n == 1

def ensure_refundable(order: Order):
    if order.status == "refunded":
        raise InvalidState("Order is already refunded")
    if not order.is_paid:
        raise InvalidState("Cannot refund unpaid order")
    if order.status not in REFUNDABLE_STATUSES:
        raise InvalidState(f"Cannot refund an order in status {order.status}")

def apply_refund_update(order: Order, refund: dict) -> bool:
    """Only a paid, shipped or delivered order moves to refunded."""
    result = dict(order.payment_result or {})
    result["refund"] = refund
    n = Order.query.filter(
        Order.id == order.id,
        Order.is_paid.is_(True),
        Order.status.in_(REFUNDABLE_STATUSES),
    ).update({
        Order.status: "refunded",
        Order.payment_result: result,
        Order.updated_at: utcnow(),
    }, synchronize_session=False)
    db.session.commit()
    return n == 1

# ---- processors ------------------------------------------------------------

def _process_stripe(order: Order, data: dict, owner: User) -> dict:
    intent_id = (data or {}).get("payment_intent_id")
    if not intent_id:
        raise ValidationError("Stripe payment intent ID is required")

    intent = get_gateway().retrieve_payment_intent(str(intent_id))

    if intent.status != "succeeded":
        raise InvalidState(f"Payment not completed. Status: {intent.status}")
    if intent.metadata.get("order_id") != str(order.id):
        raise ValidationError("Payment intent does not match this order")
    intent_user = intent.metadata.get("user_id")
    if intent_user and intent_user != str(owner.id):
        raise ValidationError("Payment intent customer mismatch")

    validate_amount(from_cents(intent.amount_received), order.total_price)

    max_age = current_app.config.get("PAYMENT_INTENT_MAX_AGE_HOURS", 24) * 3600
    age = time.time() - intent.created
    if intent.created and age > max_age:
        # delayed confirmations are legitimate; only flag it
        logger.warning(
            "Old payment intent used intent=%s order=%s age_hours=%.1f",
            intent.id, order.id, age / 3600,
        )

    return {
        "id": intent.id,
        "status": "succeeded",
        "update_time": utcnow().isoformat(),
        "email_address": intent.receipt_email or owner.email,
        "payment_method": "stripe",
        "transaction_id": intent.id,
    }

def _process_paypal(order: Order, data: dict) -> dict:
    data = data or {}
    if not data.get("id"):
        raise ValidationError("PayPal payment ID is required")
    if data.get("status") != "COMPLETED":
        raise ValidationError("PayPal payment not completed")
    payer = data.get("payer") or {}
    if not payer.get("email_address"):
        raise ValidationError("PayPal payment data incomplete")

    # TODO: verify the capture against the PayPal orders API before trusting it
    return {
        "id": data["id"],
        "status": "succeeded",
        "update_time": data.get("update_time") or utcnow().isoformat(),
        "email_address": payer["email_address"],
        "payment_method": "paypal",
        "transaction_id": data["id"],
    }

def _process_cod(order: Order) -> dict:
    return {
        "id": f"COD_{order.id}",
        "status": "pending",
        "update_time": utcnow().isoformat(),
        "email_address": None,
        "payment_method": "cod",
    }

# ---- operations ------------------------------------------------------------

def process_payment(order_id, method, provider_data, requester: User) -> Order:
    method = (method or "").strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError("Valid payment method is required")

    order = order_service.get_order(order_id, requester)
    _ensure_payable(order)
    if method == "cod" and order.status != "pending":
        raise InvalidState("Cash on delivery can only be chosen for a pending order")

    if method == "stripe":
        result = _process_stripe(order, provider_data, order.user)
    elif method == "paypal":
        result = _process_paypal(order, provider_data)
    else:
        result = _process_cod(order)

    if method == "cod":
        applied = _mark_cod_pending(order, result)
    else:
        applied = apply_paid_update(order, result, method)

    if not applied:
        db.session.refresh(order)
        _ensure_payable(order)
        raise InvalidState("Order changed while processing payment; please retry")

    logger.info("Payment processed order=%s method=%s by=%s", order.id, method, requester.id)
    return order

def create_payment_intent(order_id, requester: User) -> dict:
    order = order_service.get_order(order_id, requester)
    _ensure_payable(order)
    total = _payable_total(order)

    gateway = get_gateway()
    owner = order.user
    _ensure_customer(owner)

    shipping = None
    addr = order.shipping_address or {}
    if addr:
        shipping = {
            "name": str(addr.get("full_name") or "")[:100],
            "address": {
                "line1": str(addr.get("address") or "")[:200],
                "city": str(addr.get("city") or "")[:100],
                "state": str(addr.get("state") or "")[:100],
                "postal_code": str(addr.get("postal_code") or "")[:20],
                "country": str(addr.get("country") or "US")[:2],
            },
        }
        if addr.get("phone_number"):
            shipping["phone"] = str(addr["phone_number"])[:20]

    intent = gateway.create_payment_intent(
        amount=to_cents(total),
        currency=current_app.config.get("PAYMENT_CURRENCY", "usd"),
        customer=owner.stripe_customer_id,
        metadata=sanitize_metadata({
            "order_id": order.id,
            "order_code": order.code or "",
            "user_id": owner.id,
            "user_email": owner.email or "",
        }),
        description=f"Payment for Order #{order.code or order.id}",
        receipt_email=owner.email,
        shipping=shipping,
    )
    logger.info("Payment intent created order=%s intent=%s amount=%s", order.id, intent.id, total)
    return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}

def create_checkout_session(order_id, requester: User) -> dict:
    """Hosted Stripe Checkout for one order; settled by the payment_intent.succeeded webhook."""
    order = order_service.get_order(order_id, requester)
    _ensure_payable(order)
    total = _payable_total(order)

    owner = order.user
    customer_id = _ensure_customer(owner)
    frontend = current_app.config.get("FRONTEND_URL", "").rstrip("/")

    session = get_gateway().create_checkout_session(
        amount=to_cents(total),
        currency=current_app.config.get("PAYMENT_CURRENCY", "usd"),
        customer=customer_id,
        name=f"Order #{order.code or order.id}",
        success_url=f"{frontend}/orders/{order.id}?success=true",
        cancel_url=f"{frontend}/orders/{order.id}?canceled=true",
        metadata=sanitize_metadata({
            "order_id": order.id,
            "order_code": order.code or "",
            "user_id": owner.id,
        }),
    )
    logger.info("Checkout session created order=%s session=%s amount=%s", order.id, session.id, total)
    return {"session_id": session.id, "url": session.url}

# ---- saved cards -----------------------------------------------------------

def _card_id(payment_method_id) -> str:
    if not isinstance(payment_method_id, str) or not payment_method_id.strip():
        raise ValidationError("Valid payment method ID is required")
    return payment_method_id.strip()

def _card_api(method) -> dict:
    return {
        "id": method.id,
        "type": method.type,
        "brand": method.brand,
        "last4": method.last4,
        "exp_month": method.exp_month,
        "exp_year": method.exp_year,
    }

def save_payment_method(user: User, payment_method_id) -> dict:
    pm_id = _card_id(payment_method_id)
    if not user.stripe_customer_id:
        raise ValidationError("No Stripe customer associated with this account")

    gateway = get_gateway()
    method = gateway.attach_payment_method(pm_id, user.stripe_customer_id)
    if not gateway.retrieve_customer(user.stripe_customer_id).default_payment_method:
        gateway.set_default_payment_method(user.stripe_customer_id, method.id)

    saved = list(user.payment_methods or [])
    if method.id not in saved:
        saved.append(method.id)
    user.payment_methods = saved
    db.session.commit()

    logger.info("Payment method saved user=%s method=%s", user.id, method.id)
    return _card_api(method)

def list_payment_methods(user: User) -> list[dict]:
    if not user.stripe_customer_id:
        return []
    return [_card_api(m) for m in get_gateway().list_payment_methods(user.stripe_customer_id)]

def remove_payment_method(user: User, payment_method_id) -> None:
    pm_id = _card_id(payment_method_id)
    saved = list(user.payment_methods or [])

    # only cards on this user's own customer can be detached
    owned = set(saved)
    if user.stripe_customer_id and pm_id not in owned:
        owned.update(m.id for m in get_gateway().list_payment_methods(user.stripe_customer_id))
    if pm_id not in owned:
        raise NotFound("Payment method not found")

    if user.stripe_customer_id:
        get_gateway().detach_payment_method(pm_id)
    user.payment_methods = [m for m in saved if m != pm_id]
    db.session.commit()
    logger.info("Payment method removed user=%s method=%s", user.id, pm_id)

# ---- webhooks --------------------------------------------------------------

def _metadata_order(obj: dict, event_type: str) -> Order | None:
    order_id = to_int((obj.get("metadata") or {}).get("order_id"))
    if order_id is None:
        logger.error("Webhook %s without order metadata object=%s", event_type, obj.get("id"))
        return None
    order = db.session.get(Order, order_id)
    if not order:
        logger.error("Webhook %s for unknown order=%s", event_type, order_id)
    return order

def _on_payment_succeeded(intent: dict):
    order = _metadata_order(intent, "payment_intent.succeeded")
    if not order:
        return
    if order.is_paid:
        logger.info("Webhook payment ignored, order already paid order=%s", order.id)
        return
    if order.status in CLOSED_STATUSES:
        # captured money on a closed order needs a manual refund
        logger.error(
            "Webhook payment for %s order left unapplied order=%s intent=%s amount=%s",
            order.status, order.id, intent.get("id"), intent.get("amount_received"),
        )
        return

    validate_amount(from_cents(intent.get("amount_received") or 0), order.total_price)

    result = {
        "id": intent.get("id"),
        "status": "succeeded",
        "update_time": utcnow().isoformat(),
        "email_address": intent.get("receipt_email") or (intent.get("metadata") or {}).get("user_email"),
        "payment_method": "stripe",
        "transaction_id": intent.get("id"),
    }
    if apply_paid_update(order, result, "stripe"):
        logger.info("Webhook payment applied order=%s intent=%s", order.id, intent.get("id"))
    else:
        logger.info("Webhook payment lost race, order already updated order=%s", order.id)

def _on_payment_failed(intent: dict):
    error = (intent.get("last_payment_error") or {}).get("message")
    logger.warning(
        "Payment failed intent=%s order=%s error=%s",
        intent.get("id"), (intent.get("metadata") or {}).get("order_id"), error,
    )

def _on_charge_refunded(charge: dict):
    order = _metadata_order(charge, "charge.refunded")
    if not order:
        return
    if order.status == "refunded":
        logger.info("Webhook refund ignored, order already refunded order=%s", order.id)
        return

    refund = {
        "refund_id": charge.get("refund") or charge.get("id"),
        "amount": to_float(from_cents(charge.get("amount_refunded") or 0)),
        "reason": "Stripe refund processed",
        "at": utcnow().isoformat(),
    }
    if apply_refund_update(order, refund):
        logger.info("Webhook refund applied order=%s charge=%s", order.id, charge.get("id"))
    else:
        logger.warning(
            "Webhook refund not applied order=%s status=%s is_paid=%s charge=%s",
            order.id, order.status, order.is_paid, charge.get("id"),
        )

WEBHOOK_HANDLERS = {
    "payment_intent.succeeded": _on_payment_succeeded,
    "payment_intent.payment_failed": _on_payment_failed,
    "charge.refunded": _on_charge_refunded,
}

def handle_webhook(payload: bytes, signature: str | None) -> dict:
    """
    Signature failures raise (400). Past that point every outcome is an
    acknowledgement so Stripe does not retry application-side errors.
    """
    event = get_gateway().construct_event(payload, signature)
    event_id, event_type = event.get("id"), event.get("type")

    age = int(time.time()) - int(event.get("created") or 0)
    if age > current_app.config.get("WEBHOOK_TOLERANCE_SECONDS", 300):
        logger.warning("Old webhook event ignored event=%s type=%s age=%s", event_id, event_type, age)
        return {"received": True, "ignored": True}

    logger.info("Webhook event received event=%s type=%s", event_id, event_type)
    handler = WEBHOOK_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled webhook event type=%s event=%s", event_type, event_id)
        return {"received": True}

    obj = ((event.get("data") or {}).get("object")) or {}
    try:
        handler(obj)
    except Exception:
        db.session.rollback()
        logger.exception("Webhook processing error event=%s type=%s", event_id, event_type)
        return {"received": True, "processed": False}
    return {"received": True}

# ---- refunds ---------------------------------------------------------------

def _refund_amount(raw, total):
    total = round_money(total)
    if raw in (None, ""):
        return total
    try:
        requested = round_money(raw)
    except ValueError:
        raise ValidationError("amount must be numeric")
    if requested <= 0:
        raise ValidationError("Invalid refund amount")
    return min(requested, total)

def process_refund(order_id, amount, reason, admin: User) -> dict:
    if not admin.is_admin:
        raise Forbidden("Only administrators can process refunds")

    oid = to_int(order_id)
    if oid is None:
        raise ValidationError("Valid order ID is required")
    order = db.session.get(Order, oid)
    if not order:
        raise NotFound("Order not found")

    ensure_refundable(order)
    if order.payment_method == "cod":
        raise InvalidState("COD orders cannot be refunded through this endpoint")
    payment_ref = (order.payment_result or {}).get("id")
    if not payment_ref:
        raise InvalidState("Payment information not found for this order")

    refund_amount = _refund_amount(amount, order.total_price)
    provider_reason = reason if reason in STRIPE_REFUND_REASONS else "requested_by_customer"

    # provider first; a failure here leaves the order untouched
    stripe_refund = get_gateway().create_refund(
        payment_intent_id=payment_ref,
        amount=to_cents(refund_amount),
        reason=provider_reason,
        metadata=sanitize_metadata({"order_id": order.id, "order_code": order.code or ""}),
    )

    refund = {
        "refund_id": stripe_refund.id,
        "amount": to_float(refund_amount),
        "reason": reason or "Admin processed refund",
        "admin_id": admin.id,
        "at": utcnow().isoformat(),
    }
    if apply_refund_update(order, refund):
        inventory_service.restock_order(order, "refund")
    else:
        db.session.refresh(order)
        recorded = (order.payment_result or {}).get("refund") or {}
        if order.status == "refunded" and "admin_id" not in recorded:
            # charge.refunded got there first; it records the refund but never restocks
            logger.warning("Order already marked refunded by webhook order=%s refund=%s", order.id, stripe_refund.id)
            inventory_service.restock_order(order, "refund")
        else:
            logger.warning(
                "Refund recorded concurrently, stock left as is order=%s status=%s refund=%s",
                order.id, order.status, stripe_refund.id,
            )
    logger.info(
        "Refund processed order=%s amount=%s refund=%s by=%s",
        order.id, refund_amount, stripe_refund.id, admin.id,
    )
    return {
        "order_id": order.id,
        "refund": {"id": stripe_refund.id, "amount": to_float(refund_amount), "status": stripe_refund.status},
    }
