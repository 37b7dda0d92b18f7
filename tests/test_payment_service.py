"""Payment reconciler: synchronous confirmation, intents, webhooks and refunds."""

from __future__ import annotations

import logging
import time

import pytest

from app.extensions import db
from app.model import Order, Product
from app.services import admin_service, order_service, payment_service
from app.utils.errors import (
    AlreadyPaid,
    AmountMismatch,
    Forbidden,
    InvalidState,
    NotFound,
    UpstreamPaymentFailure,
    ValidationError,
    WebhookSignatureInvalid,
)
from app.utils.money import to_cents

from .fakes import make_event, sign_payload


@pytest.fixture
def order(user, make_product, place_order) -> Order:
    # 3 x 20.00 -> total 76.00
    return place_order(user, (make_product(price="20.00", stock=5), 3))


def _succeeded_intent(gateway, order, intent_id="pi_1", **overrides):
    fields = {
        "amount": to_cents(order.total_price),
        "amount_received": to_cents(order.total_price),
        "metadata": {"order_id": str(order.id), "user_id": str(order.user_id)},
        "receipt_email": "buyer@example.com",
    }
    fields.update(overrides)
    return gateway.add_intent(intent_id, **fields)


def _paid(order_id: int) -> Order:
    o = db.session.get(Order, order_id)
    db.session.refresh(o)
    return o


# ---- processPayment --------------------------------------------------------

def test_stripe_payment_marks_order_paid(user, order, gateway) -> None:
    _succeeded_intent(gateway, order)

    paid = payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)

    assert paid.is_paid
    assert paid.status == "paid"
    assert paid.paid_at is not None
    assert paid.payment_result["id"] == "pi_1"
    assert paid.payment_result["email_address"] == "buyer@example.com"


def test_second_payment_fails_and_keeps_first_result(user, order, gateway) -> None:
    _succeeded_intent(gateway, order, "pi_1")
    _succeeded_intent(gateway, order, "pi_2")
    payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)

    with pytest.raises(AlreadyPaid):
        payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_2"}, user)

    assert _paid(order.id).payment_result["id"] == "pi_1"


def test_amount_mismatch(user, order, gateway) -> None:
    _succeeded_intent(gateway, order, amount_received=to_cents(order.total_price) - 100)
    with pytest.raises(AmountMismatch):
        payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)
    assert not _paid(order.id).is_paid


def test_amount_within_tolerance(user, order, gateway) -> None:
    _succeeded_intent(gateway, order, amount_received=to_cents(order.total_price) - 1)
    assert payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user).is_paid


def test_intent_for_another_order(user, order, gateway) -> None:
    _succeeded_intent(gateway, order, metadata={"order_id": str(order.id + 100)})
    with pytest.raises(ValidationError) as exc:
        payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)
    assert exc.value.message == "Payment intent does not match this order"


def test_intent_for_another_customer(user, order, gateway) -> None:
    _succeeded_intent(gateway, order, metadata={"order_id": str(order.id), "user_id": "9999"})
    with pytest.raises(ValidationError):
        payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)


def test_intent_not_succeeded(user, order, gateway) -> None:
    _succeeded_intent(gateway, order, status="requires_payment_method")
    with pytest.raises(InvalidState):
        payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)


def test_missing_intent_id(user, order) -> None:
    with pytest.raises(ValidationError):
        payment_service.process_payment(order.id, "stripe", {}, user)


def test_stale_intent_only_warns(user, order, gateway, caplog) -> None:
    _succeeded_intent(gateway, order, created=int(time.time()) - 48 * 3600)

    with caplog.at_level(logging.WARNING, logger="app.services.payment_service"):
        paid = payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)

    assert paid.is_paid
    assert "Old payment intent used" in caplog.text


def test_paypal_payment(user, order) -> None:
    data = {"id": "PAY-1", "status": "COMPLETED", "payer": {"email_address": "pp@example.com"}}
    paid = payment_service.process_payment(order.id, "paypal", data, user)
    assert paid.status == "paid"
    assert paid.payment_method == "paypal"
    assert paid.payment_result["transaction_id"] == "PAY-1"


def test_paypal_requires_payer_email(user, order) -> None:
    with pytest.raises(ValidationError):
        payment_service.process_payment(order.id, "paypal", {"id": "PAY-1", "status": "COMPLETED"}, user)


def test_cod_moves_to_processing_unpaid(user, order) -> None:
    result = payment_service.process_payment(order.id, "cod", None, user)
    assert result.status == "processing"
    assert not result.is_paid
    assert result.payment_result["id"] == f"COD_{order.id}"

    with pytest.raises(InvalidState):
        payment_service.process_payment(order.id, "cod", None, user)


def test_cancelled_order_cannot_be_paid(user, order, gateway) -> None:
    order_service.cancel_order(order.id, user)
    _succeeded_intent(gateway, order)
    with pytest.raises(InvalidState):
        payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)


def test_stranger_cannot_pay(make_user, order) -> None:
    with pytest.raises(Forbidden):
        payment_service.process_payment(order.id, "cod", None, make_user())


def test_unknown_method(user, order) -> None:
    with pytest.raises(ValidationError):
        payment_service.process_payment(order.id, "cheque", {}, user)


# ---- createPaymentIntent ---------------------------------------------------

def test_create_intent_creates_customer_once(user, order, gateway) -> None:
    first = payment_service.create_payment_intent(order.id, user)
    second = payment_service.create_payment_intent(order.id, user)

    assert first["client_secret"].startswith(first["payment_intent_id"])
    assert second["payment_intent_id"] != first["payment_intent_id"]
    assert len(gateway.customers) == 1
    assert user.stripe_customer_id == "cus_1"

    sent = gateway.created_intents[0]
    assert sent["amount"] == 7600
    assert sent["customer"] == "cus_1"
    assert sent["metadata"]["order_id"] == str(order.id)
    assert sent["shipping"]["address"]["country"] == "KH"


def test_create_intent_for_paid_order(user, order) -> None:
    order.is_paid = True
    db.session.commit()
    with pytest.raises(AlreadyPaid):
        payment_service.create_payment_intent(order.id, user)


def test_create_intent_rejects_oversized_total(app, user, order) -> None:
    app.config["MAX_PAYMENT_AMOUNT"] = 50
    with pytest.raises(ValidationError):
        payment_service.create_payment_intent(order.id, user)


def test_sanitize_metadata() -> None:
    assert payment_service.sanitize_metadata({"a": "x<script>@y.z", "b": None, "c": 12}) == {
        "a": "xscript@y.z",
        "c": "12",
    }


# ---- webhooks --------------------------------------------------------------

def _intent_payload(order, **overrides) -> dict:
    obj = {
        "id": "pi_hook",
        "amount_received": to_cents(order.total_price),
        "receipt_email": "hook@example.com",
        "metadata": {"order_id": str(order.id)},
    }
    obj.update(overrides)
    return obj


def _send(event: str) -> dict:
    return payment_service.handle_webhook(event.encode("utf-8"), sign_payload(event))


def test_webhook_rejects_bad_signature(order) -> None:
    event = make_event("payment_intent.succeeded", _intent_payload(order))
    with pytest.raises(WebhookSignatureInvalid):
        payment_service.handle_webhook(event.encode(), sign_payload(event, secret="whsec_wrong"))
    with pytest.raises(WebhookSignatureInvalid):
        payment_service.handle_webhook(event.encode(), None)
    assert not _paid(order.id).is_paid


def test_webhook_succeeded_marks_paid(order) -> None:
    assert _send(make_event("payment_intent.succeeded", _intent_payload(order))) == {"received": True}
    paid = _paid(order.id)
    assert paid.is_paid
    assert paid.status == "paid"
    assert paid.payment_result["email_address"] == "hook@example.com"


def test_duplicate_succeeded_event_is_noop(order) -> None:
    event = make_event("payment_intent.succeeded", _intent_payload(order))
    _send(event)
    paid_at = _paid(order.id).paid_at

    assert _send(event) == {"received": True}
    assert _paid(order.id).paid_at == paid_at


def test_webhook_after_synchronous_confirmation_is_noop(user, order, gateway) -> None:
    _succeeded_intent(gateway, order)
    payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)
    before = _paid(order.id)
    paid_at, result = before.paid_at, dict(before.payment_result)

    _send(make_event("payment_intent.succeeded", _intent_payload(order)))

    after = _paid(order.id)
    assert after.paid_at == paid_at
    assert after.payment_result == result


def test_old_event_acknowledged_but_ignored(order) -> None:
    event = make_event("payment_intent.succeeded", _intent_payload(order), created=int(time.time()) - 3600)
    assert _send(event) == {"received": True, "ignored": True}
    assert not _paid(order.id).is_paid


def test_webhook_amount_mismatch_still_acknowledged(order) -> None:
    event = make_event("payment_intent.succeeded", _intent_payload(order, amount_received=100))
    assert _send(event) == {"received": True, "processed": False}
    assert not _paid(order.id).is_paid


def test_webhook_without_order_metadata(order) -> None:
    assert _send(make_event("payment_intent.succeeded", {"id": "pi_x", "metadata": {}})) == {"received": True}


def test_payment_failed_event_changes_nothing(order) -> None:
    event = make_event("payment_intent.payment_failed", _intent_payload(order, last_payment_error={"message": "declined"}))
    assert _send(event) == {"received": True}
    o = _paid(order.id)
    assert (o.status, o.is_paid) == ("pending", False)


def test_unhandled_event_type(order) -> None:
    assert _send(make_event("customer.created", {"id": "cus_1"})) == {"received": True}


def test_charge_refunded_event(order) -> None:
    _send(make_event("payment_intent.succeeded", _intent_payload(order)))
    charge = {"id": "ch_1", "refund": "re_9", "amount_refunded": 7600, "metadata": {"order_id": str(order.id)}}

    _send(make_event("charge.refunded", charge, event_id="evt_2"))
    refunded = _paid(order.id)
    assert refunded.status == "refunded"
    assert refunded.payment_result["refund"]["refund_id"] == "re_9"
    assert refunded.payment_result["refund"]["amount"] == 76.0
    assert refunded.payment_result["id"] == "pi_hook"

    at = refunded.payment_result["refund"]["at"]
    _send(make_event("charge.refunded", dict(charge, refund="re_10"), event_id="evt_3"))
    assert _paid(order.id).payment_result["refund"]["at"] == at


# ---- refunds ---------------------------------------------------------------

@pytest.fixture
def paid_order(user, order, gateway) -> Order:
    _succeeded_intent(gateway, order)
    return payment_service.process_payment(order.id, "stripe", {"payment_intent_id": "pi_1"}, user)


def test_full_refund_restocks(admin, paid_order, gateway) -> None:
    product_id = paid_order.items[0].product_id
    assert db.session.get(Product, product_id).stock == 2

    result = payment_service.process_refund(paid_order.id, None, "damaged", admin)

    assert result["refund"] == {"id": "re_1", "amount": 76.0, "status": "succeeded"}
    assert gateway.refunds[0]["amount"] == 7600
    assert gateway.refunds[0]["payment_intent"] == "pi_1"
    assert gateway.refunds[0]["reason"] == "requested_by_customer"
    o = _paid(paid_order.id)
    assert o.status == "refunded"
    assert o.payment_result["refund"]["admin_id"] == admin.id
    assert o.payment_result["refund"]["reason"] == "damaged"
    assert db.session.get(Product, product_id).stock == 5


def test_partial_refund_amount_is_clamped(admin, paid_order, gateway) -> None:
    payment_service.process_refund(paid_order.id, "500", "duplicate", admin)
    assert gateway.refunds[0]["amount"] == 7600
    assert gateway.refunds[0]["reason"] == "duplicate"


def test_partial_refund(admin, paid_order, gateway) -> None:
    result = payment_service.process_refund(paid_order.id, 20, None, admin)
    assert result["refund"]["amount"] == 20.0
    assert gateway.refunds[0]["amount"] == 2000


def test_refund_requires_admin(user, paid_order) -> None:
    with pytest.raises(Forbidden):
        payment_service.process_refund(paid_order.id, None, None, user)


def test_refund_unpaid_order(admin, order) -> None:
    with pytest.raises(InvalidState):
        payment_service.process_refund(order.id, None, None, admin)


def test_refund_cod_order(admin, user, order) -> None:
    payment_service.process_payment(order.id, "cod", None, user)
    o = _paid(order.id)
    o.is_paid = True
    o.status = "delivered"
    db.session.commit()
    with pytest.raises(InvalidState) as exc:
        payment_service.process_refund(order.id, None, None, admin)
    assert "COD" in exc.value.message


def test_provider_refund_failure_changes_nothing(admin, paid_order, gateway) -> None:
    gateway.fail_refunds = True
    product_id = paid_order.items[0].product_id

    with pytest.raises(UpstreamPaymentFailure):
        payment_service.process_refund(paid_order.id, None, None, admin)

    o = _paid(paid_order.id)
    assert o.status == "paid"
    assert "refund" not in o.payment_result
    assert db.session.get(Product, product_id).stock == 2


def test_refund_twice(admin, paid_order) -> None:
    payment_service.process_refund(paid_order.id, None, None, admin)
    with pytest.raises(InvalidState):
        payment_service.process_refund(paid_order.id, None, None, admin)


# ---- closed orders and refund races ----------------------------------------

def test_late_payment_for_cancelled_order_is_not_applied(admin, user, order, gateway) -> None:
    product_id = order.items[0].product_id
    order_service.cancel_order(order.id, user)
    assert db.session.get(Product, product_id).stock == 5

    assert _send(make_event("payment_intent.succeeded", _intent_payload(order))) == {"received": True}

    o = _paid(order.id)
    assert (o.status, o.is_paid) == ("cancelled", False)
    with pytest.raises(InvalidState):
        payment_service.process_refund(order.id, None, None, admin)
    assert gateway.refunds == []
    assert db.session.get(Product, product_id).stock == 5


def test_cancelled_order_never_moves_to_refunded(admin, user, order) -> None:
    product_id = order.items[0].product_id
    order_service.cancel_order(order.id, user)
    o = _paid(order.id)
    o.is_paid = True
    o.payment_result = {"id": "pi_1"}
    db.session.commit()

    with pytest.raises(InvalidState):
        payment_service.process_refund(order.id, None, None, admin)
    with pytest.raises(InvalidState):
        admin_service.force_refund(order.id, admin)
    charge = {"id": "ch_1", "refund": "re_9", "amount_refunded": 7600, "metadata": {"order_id": str(order.id)}}
    _send(make_event("charge.refunded", charge))

    assert not payment_service.apply_refund_update(o, {"refund_id": "re_x"})
    assert _paid(order.id).status == "cancelled"
    assert db.session.get(Product, product_id).stock == 5


def test_refund_racing_forced_refund_restocks_once(admin, paid_order, gateway, monkeypatch) -> None:
    product_id = paid_order.items[0].product_id
    provider_refund = gateway.create_refund

    def refund_while_admin_forces(*args, **kwargs):
        admin_service.force_refund(paid_order.id, admin, "settled by hand")
        return provider_refund(*args, **kwargs)

    monkeypatch.setattr(gateway, "create_refund", refund_while_admin_forces)
    payment_service.process_refund(paid_order.id, None, None, admin)

    o = _paid(paid_order.id)
    assert o.status == "refunded"
    assert o.payment_result["refund"]["forced"] is True
    assert db.session.get(Product, product_id).stock == 5


def test_refund_after_webhook_recorded_it_restocks_once(admin, paid_order, gateway, monkeypatch) -> None:
    product_id = paid_order.items[0].product_id
    provider_refund = gateway.create_refund
    charge = {"id": "ch_1", "refund": "re_hook", "amount_refunded": 7600, "metadata": {"order_id": str(paid_order.id)}}

    def refund_while_webhook_lands(*args, **kwargs):
        _send(make_event("charge.refunded", charge, event_id="evt_refund"))
        return provider_refund(*args, **kwargs)

    monkeypatch.setattr(gateway, "create_refund", refund_while_webhook_lands)
    payment_service.process_refund(paid_order.id, None, None, admin)

    o = _paid(paid_order.id)
    assert o.payment_result["refund"]["refund_id"] == "re_hook"
    assert db.session.get(Product, product_id).stock == 5


def test_webhook_body_that_is_not_utf8(order) -> None:
    with pytest.raises(WebhookSignatureInvalid):
        payment_service.handle_webhook(b'{"id":"evt_1","x":"\xff\xfe"}', sign_payload("{}"))
    assert not _paid(order.id).is_paid


# ---- checkout session ------------------------------------------------------

def test_checkout_session(user, order, gateway) -> None:
    result = payment_service.create_checkout_session(order.id, user)

    assert result == {"session_id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}
    session = gateway.sessions[0]
    assert session["amount"] == 7600
    assert session["customer"] == "cus_1"
    assert session["metadata"]["order_id"] == str(order.id)
    assert session["success_url"].endswith(f"/orders/{order.id}?success=true")
    assert session["cancel_url"].endswith(f"/orders/{order.id}?canceled=true")
    assert user.stripe_customer_id == "cus_1"


def test_checkout_session_for_paid_order(user, paid_order, gateway) -> None:
    with pytest.raises(AlreadyPaid):
        payment_service.create_checkout_session(paid_order.id, user)
    assert gateway.sessions == []


def test_checkout_session_for_someone_elses_order(make_user, order) -> None:
    with pytest.raises(Forbidden):
        payment_service.create_checkout_session(order.id, make_user())


# ---- saved cards -----------------------------------------------------------

def test_save_card_needs_customer(user, gateway) -> None:
    gateway.add_card("pm_1")
    with pytest.raises(ValidationError):
        payment_service.save_payment_method(user, "pm_1")


@pytest.mark.parametrize("raw", [None, "", "   ", 42])
def test_card_id_required(user, raw) -> None:
    with pytest.raises(ValidationError):
        payment_service.save_payment_method(user, raw)


def test_list_cards_without_customer(user) -> None:
    assert payment_service.list_payment_methods(user) == []


def test_save_list_and_remove_cards(user, gateway) -> None:
    user.stripe_customer_id = "cus_9"
    db.session.commit()
    gateway.add_card("pm_1")
    gateway.add_card("pm_2", brand="mastercard", last4="4444")

    first = payment_service.save_payment_method(user, "pm_1")
    payment_service.save_payment_method(user, "pm_2")
    payment_service.save_payment_method(user, "pm_1")

    assert first["brand"] == "visa"
    assert first["last4"] == "4242"
    assert gateway.defaults["cus_9"] == "pm_1"
    assert user.payment_methods == ["pm_1", "pm_2"]
    assert [c["id"] for c in payment_service.list_payment_methods(user)] == ["pm_1", "pm_2"]

    payment_service.remove_payment_method(user, "pm_1")

    assert gateway.detached == ["pm_1"]
    assert user.payment_methods == ["pm_2"]
    assert [c["id"] for c in payment_service.list_payment_methods(user)] == ["pm_2"]


def test_cannot_remove_another_users_card(user, make_user, gateway) -> None:
    other = make_user()
    other.stripe_customer_id = "cus_other"
    user.stripe_customer_id = "cus_me"
    db.session.commit()
    gateway.add_card("pm_x")
    payment_service.save_payment_method(other, "pm_x")

    with pytest.raises(NotFound):
        payment_service.remove_payment_method(user, "pm_x")
    assert gateway.detached == []
