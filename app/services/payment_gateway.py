# app/services/payment_gateway.py
"""
Thin wrapper over the stripe SDK. Returns plain dataclasses so the rest of
the app never touches StripeObject, and maps provider errors onto
UpstreamPaymentFailure.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field

import stripe
from flask import current_app

from ..utils.errors import UpstreamPaymentFailure, WebhookSignatureInvalid

logger = logging.getLogger(__name__)


@dataclass
class PaymentIntent:
    id: str
    status: str
    amount: int = 0                 # cents
    amount_received: int = 0        # cents
    currency: str = "usd"
    created: int = 0                # unix seconds
    metadata: dict = field(default_factory=dict)
    receipt_email: str | None = None
    client_secret: str | None = None

@dataclass
class Refund:
    id: str
    status: str
    amount: int = 0

@dataclass
class Customer:
    id: str
    default_payment_method: str | None = None

@dataclass
class PaymentMethod:
    id: str
    type: str = "card"
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None

@dataclass
class CheckoutSession:
    id: str
    url: str | None = None


def _intent_from(obj) -> PaymentIntent:
    return PaymentIntent(
        id=obj["id"],
        status=obj.get("status") or "",
        amount=int(obj.get("amount") or 0),
        amount_received=int(obj.get("amount_received") or 0),
        currency=obj.get("currency") or "usd",
        created=int(obj.get("created") or 0),
        metadata=dict(obj.get("metadata") or {}),
        receipt_email=obj.get("receipt_email"),
        client_secret=obj.get("client_secret"),
    )

def _method_from(obj) -> PaymentMethod:
    card = obj.get("card") or {}
    return PaymentMethod(
        id=obj["id"],
        type=obj.get("type") or "card",
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
    )


class StripeGateway:
    def __init__(self, api_key: str = "", webhook_secret: str = ""):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    @classmethod
    def from_config(cls, config) -> StripeGateway:
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY", ""),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET", ""),
        )

    # ---- provider calls ----------------------------------------------------

    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        try:
            obj = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error("Stripe retrieve intent failed intent=%s: %s", intent_id, e)
            raise UpstreamPaymentFailure("Payment provider request failed")
        return _intent_from(obj)

    def create_customer(self, email: str, name: str | None, metadata: dict) -> Customer:
        try:
            obj = stripe.Customer.create(
                email=email, name=name, metadata=metadata, api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error("Stripe customer create failed email=%s: %s", email, e)
            raise UpstreamPaymentFailure("Payment provider request failed")
        return Customer(id=obj["id"])

    def create_payment_intent(self, amount: int, currency: str, customer: str | None,
                              metadata: dict, description: str | None = None,
                              receipt_email: str | None = None, shipping: dict | None = None) -> PaymentIntent:
        params = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
        }
        if customer:
            params["customer"] = customer
        if description:
            params["description"] = description
        if receipt_email:
            params["receipt_email"] = receipt_email
        if shipping:
            params["shipping"] = shipping
        try:
            obj = stripe.PaymentIntent.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe create intent failed order=%s: %s", metadata.get("order_id"), e)
            raise UpstreamPaymentFailure("Failed to create payment intent")
        return _intent_from(obj)

    def create_refund(self, payment_intent_id: str, amount: int, reason: str, metadata: dict) -> Refund:
        try:
            obj = stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=amount,
                reason=reason,
                metadata=metadata,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe refund failed intent=%s: %s", payment_intent_id, e)
            raise UpstreamPaymentFailure("Refund failed at payment provider")
        return Refund(id=obj["id"], status=obj.get("status") or "", amount=int(obj.get("amount") or 0))

    # ---- saved cards -------------------------------------------------------

    def retrieve_customer(self, customer_id: str) -> Customer:
        try:
            obj = stripe.Customer.retrieve(customer_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error("Stripe retrieve customer failed customer=%s: %s", customer_id, e)
            raise UpstreamPaymentFailure("Payment provider request failed")
        default = (obj.get("invoice_settings") or {}).get("default_payment_method")
        if isinstance(default, dict):
            default = default.get("id")
        return Customer(id=obj["id"], default_payment_method=default)

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        try:
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe set default card failed customer=%s: %s", customer_id, e)
            raise UpstreamPaymentFailure("Failed to save payment method")

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> PaymentMethod:
        try:
            obj = stripe.PaymentMethod.attach(payment_method_id, customer=customer_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error("Stripe attach card failed customer=%s method=%s: %s", customer_id, payment_method_id, e)
            raise UpstreamPaymentFailure("Failed to save payment method")
        return _method_from(obj)

    def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        try:
            result = stripe.PaymentMethod.list(customer=customer_id, type="card", api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error("Stripe list cards failed customer=%s: %s", customer_id, e)
            raise UpstreamPaymentFailure("Failed to retrieve payment methods")
        return [_method_from(obj) for obj in result.get("data") or []]

    def detach_payment_method(self, payment_method_id: str) -> None:
        try:
            stripe.PaymentMethod.detach(payment_method_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error("Stripe detach card failed method=%s: %s", payment_method_id, e)
            raise UpstreamPaymentFailure("Failed to remove payment method")

    # ---- hosted checkout ---------------------------------------------------

    def create_checkout_session(self, amount: int, currency: str, customer: str, name: str,
                                success_url: str, cancel_url: str, metadata: dict) -> CheckoutSession:
        try:
            obj = stripe.checkout.Session.create(
                customer=customer,
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": name},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }],
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                # the intent carries the order id so payment_intent.succeeded can settle it
                payment_intent_data={"metadata": metadata},
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe checkout session failed order=%s: %s", metadata.get("order_id"), e)
            raise UpstreamPaymentFailure("Failed to create checkout session")
        return CheckoutSession(id=obj["id"], url=obj.get("url"))

    # ---- webhooks ----------------------------------------------------------

    def construct_event(self, payload: bytes | str, signature: str | None) -> dict:
        """Verify the Stripe-Signature header and decode the event. Age is checked by the caller."""
        if not signature:
            raise WebhookSignatureInvalid("Webhook signature required")
        if not self.webhook_secret:
            logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
            raise WebhookSignatureInvalid("Webhook signature verification failed")

        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                logger.error("Webhook payload is not valid UTF-8")
                raise WebhookSignatureInvalid("Webhook signature verification failed")
        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, tolerance=None)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            raise WebhookSignatureInvalid("Webhook signature verification failed")

        try:
            event = json.loads(payload)
        except ValueError:
            raise WebhookSignatureInvalid("Webhook payload is not valid JSON")
        if not isinstance(event, dict):
            raise WebhookSignatureInvalid("Webhook payload is not an event")
        return event


def get_gateway() -> StripeGateway:
    return current_app.extensions["payment_gateway"]
