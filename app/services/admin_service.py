# app/services/admin_service.py
"""
Admin overrides on orders. Every change is a guarded UPDATE against the
state that was read, so an override cannot clobber a concurrent webhook or
customer action.
"""
from __future__ import annotations
import logging

from ..extensions import db
from ..model import Order, User
from ..model.order import ORDER_STATUSES, RETURN_STATUSES, RETURN_TRANSITIONS
from ..utils.api import to_int
from ..utils.dates import utcnow
from ..utils.errors import AlreadyPaid, InvalidState, NotFound, ValidationError
from ..utils.money import to_float
from . import inventory_service
from .payment_service import apply_paid_update, apply_refund_update, ensure_refundable

logger = logging.getLogger(__name__)

DELIVERABLE_STATUSES = ("processing", "paid", "shipped")


def get_order(order_id) -> Order:
    oid = to_int(order_id)
    if oid is None:
        raise ValidationError("Invalid order ID")
    order = db.session.get(Order, oid)
    if not order:
        raise NotFound("Order not found")
    return order

def _guarded_update(order: Order, values: dict, *conditions) -> bool:
    values[Order.updated_at] = utcnow()
    n = Order.query.filter(Order.id == order.id, *conditions).update(values, synchronize_session=False)
    db.session.commit()
    return n == 1

def _changed_concurrently(order: Order):
    raise InvalidState(f"Order {order.id} changed concurrently; reload and retry")

# ---- payment / fulfilment --------------------------------------------------

def mark_paid(order_id, admin: User) -> Order:
    order = get_order(order_id)
    if order.is_paid:
        raise AlreadyPaid("Order is already paid")
    if order.status in ("cancelled", "refunded"):
        raise InvalidState("Cannot mark a cancelled or refunded order as paid")

    result = {
        "id": f"ADMIN_{order.id}",
        "status": "succeeded",
        "update_time": utcnow().isoformat(),
        "email_address": None,
        "payment_method": "admin_manual",
        "admin_id": admin.id,
    }
    if not apply_paid_update(order, result, order.payment_method):
        _changed_concurrently(order)
    logger.info("Admin marked order paid order=%s by=%s", order.id, admin.id)
    return order

def mark_delivered(order_id, admin: User) -> Order:
    order = get_order(order_id)
    if order.is_delivered:
        raise InvalidState("Order is already delivered")
    # admin delivery may skip "shipped"; it never starts from pending or a closed state
    if order.status not in DELIVERABLE_STATUSES:
        raise InvalidState(f"Cannot deliver an order in status {order.status}")

    now = utcnow()
    values = {
        Order.is_delivered: True,
        Order.delivered_at: now,
        Order.status: "delivered",
    }
    if not order.is_paid:
        if order.payment_method != "cod":
            raise InvalidState("Cannot deliver an unpaid order")
        # cash collected at the door
        values.update({
            Order.is_paid: True,
            Order.paid_at: now,
            Order.payment_result: {
                **(order.payment_result or {}),
                "status": "succeeded",
                "update_time": now.isoformat(),
                "collected_by": admin.id,
            },
        })

    if not _guarded_update(order, values, Order.is_delivered.is_(False), Order.status == order.status):
        _changed_concurrently(order)
    logger.info("Admin marked order delivered order=%s by=%s", order.id, admin.id)
    return order

def force_refund(order_id, admin: User, reason: str | None = None) -> Order:
    """Record a refund settled outside the provider. Restocks like a provider refund."""
    order = get_order(order_id)
    ensure_refundable(order)

    refund = {
        "refund_id": None,
        "amount": to_float(order.total_price),
        "reason": reason or "Admin forced refund",
        "admin_id": admin.id,
        "forced": True,
        "at": utcnow().isoformat(),
    }
    if not apply_refund_update(order, refund):
        _changed_concurrently(order)
    inventory_service.restock_order(order, "refund")
    logger.info("Admin forced refund order=%s by=%s", order.id, admin.id)
    return order

def update_status(order_id, status, admin: User, notes=None) -> Order:
    status = (status or "").strip().lower()
    if status not in ORDER_STATUSES:
        raise ValidationError("Invalid status value")

    order = get_order(order_id)
    if not order.can_transition(status):
        raise InvalidState(f"Cannot change status from {order.status} to {status}")

    # transitions with side effects go through their own operations
    if status == "delivered":
        order = mark_delivered(order.id, admin)
    elif status == "refunded":
        order = force_refund(order.id, admin, notes)
    elif status == "paid" and not order.is_paid:
        order = mark_paid(order.id, admin)
    else:
        values = {Order.status: status}
        conditions = [Order.status == order.status]
        if status == "cancelled":
            conditions.append(Order.is_paid.is_(False))
        if not _guarded_update(order, values, *conditions):
            _changed_concurrently(order)
        if status == "cancelled":
            inventory_service.restock_order(order, "cancel")

    if notes is not None and status != "refunded":
        order.notes = notes
        db.session.commit()
    logger.info("Admin updated order status order=%s status=%s by=%s", order.id, status, admin.id)
    return order

# ---- returns ---------------------------------------------------------------

def set_return_status(order_id, return_status, admin: User, notes=None) -> Order:
    return_status = (return_status or "").strip().lower()
    if return_status not in RETURN_STATUSES:
        raise ValidationError("Invalid return status")
    if return_status == "requested":
        raise ValidationError("Returns are requested by the customer")

    order = get_order(order_id)
    current = order.return_status or "none"
    if return_status not in RETURN_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Cannot change return status from {current} to {return_status}")

    values = {Order.return_status: return_status}
    if notes is not None:
        values[Order.notes] = notes
    if not _guarded_update(order, values, Order.return_status == current):
        _changed_concurrently(order)
    logger.info("Admin set return status order=%s %s -> %s by=%s", order.id, current, return_status, admin.id)
    return order
