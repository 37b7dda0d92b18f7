#  --- /models/notification.py ---
from sqlalchemy.sql import func
from ..extensions import db

class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    kind = db.Column(db.String(40), nullable=False, default="info")
    message = db.Column(db.String(255), nullable=False)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, server_default=func.now())

    def as_api(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "kind": self.kind,
            "message": self.message,
            "is_read": bool(self.is_read),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
