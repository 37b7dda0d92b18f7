# app/services/notification_service.py
import logging
import threading

from flask import current_app

from ..extensions import db
from ..model import Notification, Order, User

logger = logging.getLogger(__name__)


def send_order_confirmation(user: User, order: Order) -> None:
    """Fire-and-forget; nothing here can fail the caller."""
    app = current_app._get_current_object()
    if app.config.get("NOTIFY_ASYNC", True):
        threading.Thread(
            target=_deliver_in_context,
            args=(app, user.id, order.id),
            daemon=True,
        ).start()
    else:
        _deliver(user.id, order.id)

def _deliver_in_context(app, user_id: int, order_id: int) -> None:
    with app.app_context():
        _deliver(user_id, order_id)

def _deliver(user_id: int, order_id: int) -> None:
    try:
        order = db.session.get(Order, order_id)
        user = db.session.get(User, user_id)
        if not order or not user:
            logger.error("Order confirmation skipped, missing order=%s user=%s", order_id, user_id)
            return

        link = f"{current_app.config.get('FRONTEND_URL', '').rstrip('/')}/orders/{order.id}"
        db.session.add(Notification(
            user_id=user.id,
            order_id=order.id,
            kind="order_confirmation",
            message=f"Order {order.code} confirmed. Total {order.total_price:.2f}",
        ))
        db.session.commit()
        # email delivery itself is handled outside this service
        logger.info("Order confirmation queued order=%s to=%s link=%s", order.id, user.email, link)
    except Exception as e:
        db.session.rollback()
        logger.error("Order confirmation failed order=%s user=%s: %s", order_id, user_id, e)
