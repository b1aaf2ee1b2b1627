# backend/models/notification.py
from datetime import datetime
from backend.extensions import db

KIND_ORDER_CONFIRMATION = "order_confirmation"
KIND_ORDER_ADMIN = "order_admin"
KIND_PAYMENT_CONFIRMATION = "payment_confirmation"
KIND_PAYMENT_ADMIN = "payment_admin"

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


class NotificationOutbox(db.Model):
    """One e-mail to send after an order state change has been committed."""
    __tablename__ = "notification_outbox"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("checkout_order.id"), nullable=False, index=True)
    kind = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    sent_at = db.Column(db.DateTime, nullable=True)

    order = db.relationship("Order", lazy="joined")

    def __repr__(self):
        return f"<NotificationOutbox #{self.id} {self.kind} order={self.order_id} {self.status}>"
