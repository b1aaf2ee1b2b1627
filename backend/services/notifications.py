# backend/services/notifications.py
"""
E-mails that follow order state changes.

Rows are added to the session by the code that changes the order and are
committed with it; sending happens afterwards and may fail on its own.
A failed row stays in the table for ``flask dispatch-notifications``.
"""
from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from backend.extensions import db
from backend.models import NotificationOutbox, Order
from backend.models.notification import (
    KIND_ORDER_ADMIN,
    KIND_ORDER_CONFIRMATION,
    KIND_PAYMENT_ADMIN,
    KIND_PAYMENT_CONFIRMATION,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    STATUS_SKIPPED,
)
from backend.api.utils.email import send_email

SIGNATURE = "Accord Medical Supplies\nsales@accordmedical.co.ke"


def _money(amount) -> str:
    return f"KES {float(amount or 0):,.2f}"


def _item_lines(order: Order) -> list[str]:
    return [
        f"• {it.name} × {it.quantity} – {_money(it.price)} = {_money(it.subtotal)}"
        for it in order.items
    ]


# --- message builders -----------------------------------------------------------

def _order_confirmation(order: Order) -> tuple[str, str]:
    lines = [
        f"Dear {order.primary_name},",
        "",
        "Thank you for your order. We have received it and are waiting for payment confirmation.",
        "",
        f"Order ID: {order.order_number}",
        f"Date: {order.created_at:%Y-%m-%d %H:%M} UTC" if order.created_at else "",
        f"Facility: {order.facility_name}",
        "",
        f"Items ({len(order.items)}):",
        *_item_lines(order),
        "",
        f"Total: {_money(order.total_amount)}",
        "",
        "Next steps:",
        "1. You will receive an M-Pesa payment prompt on your phone.",
        "2. Enter your M-Pesa PIN to confirm the payment.",
        "3. We will e-mail you once the payment is confirmed.",
        "",
        SIGNATURE,
    ]
    return f"Order Confirmation - {order.order_number}", "\n".join(lines)


def _order_admin(order: Order) -> tuple[str, str]:
    lines = [
        f"New order {order.order_number}",
        "",
        f"Amount: {_money(order.total_amount)}",
        f"Customer: {order.primary_name} ({order.primary_job_title})",
        f"Phone: {order.primary_phone}",
        f"E-mail: {order.primary_email}",
        f"Facility: {order.facility_name} – {order.facility_type}, {order.facility_city}, {order.facility_county}",
        f"Alternative contact: {order.alt_name} ({order.alt_relationship}) {order.alt_phone}",
        "",
        "Items:",
        *_item_lines(order),
        "",
        f"Waiting for customer payment. STK push sent to {order.mpesa_phone_number or order.primary_phone}.",
    ]
    return f"[NEW ORDER] {order.order_number} - {_money(order.total_amount)}", "\n".join(lines)


def _payment_confirmation(order: Order) -> tuple[str, str]:
    lines = [
        f"Dear {order.primary_name},",
        "",
        "We have received your M-Pesa payment. Your order is now being processed.",
        "",
        f"Order ID: {order.order_number}",
        f"Amount paid: {_money(order.mpesa_amount if order.mpesa_amount is not None else order.total_amount)}",
    ]
    if order.mpesa_receipt_number:
        lines.append(f"M-Pesa receipt: {order.mpesa_receipt_number}")
    if order.mpesa_transaction_date:
        lines.append(f"Paid on: {order.mpesa_transaction_date:%Y-%m-%d %H:%M}")
    lines += [
        "",
        "Our team will contact you to arrange delivery.",
        "",
        SIGNATURE,
    ]
    return f"Payment Confirmed - Order {order.order_number}", "\n".join(lines)


def _payment_admin(order: Order) -> tuple[str, str]:
    lines = [
        f"Order {order.order_number} is PAID and ready for processing.",
        "",
        f"Amount: {_money(order.total_amount)}",
        f"M-Pesa receipt: {order.mpesa_receipt_number or '-'}",
        f"Paid from: {order.mpesa_paid_phone_number or order.mpesa_phone_number or '-'}",
        f"Customer: {order.primary_name}, {order.primary_phone}",
        f"Facility: {order.facility_name}, {order.facility_city}",
        "",
        "Next step: prepare the shipment and contact the customer to arrange delivery.",
    ]
    return f"PAID - {order.order_number} - Ready for Processing", "\n".join(lines)


BUILDERS = {
    KIND_ORDER_CONFIRMATION: _order_confirmation,
    KIND_ORDER_ADMIN: _order_admin,
    KIND_PAYMENT_CONFIRMATION: _payment_confirmation,
    KIND_PAYMENT_ADMIN: _payment_admin,
}

ADMIN_KINDS = (KIND_ORDER_ADMIN, KIND_PAYMENT_ADMIN)


def _recipients(row: NotificationOutbox) -> list[str]:
    if row.kind in ADMIN_KINDS:
        return list(current_app.config.get("ORDER_NOTIFICATION_EMAILS") or [])
    return [row.order.primary_email] if row.order.primary_email else []


# --- outbox -----------------------------------------------------------------------

def enqueue(order: Order, *kinds: str) -> list[NotificationOutbox]:
    """Add rows to the current session. The caller commits."""
    rows = []
    for kind in kinds:
        if kind not in BUILDERS:
            raise ValueError(f"Unknown notification kind: {kind}")
        row = NotificationOutbox(order_id=order.id, kind=kind, status=STATUS_PENDING, attempts=0)
        db.session.add(row)
        rows.append(row)
    return rows


def send_one(row: NotificationOutbox) -> bool:
    """Try to send a single row and record the outcome. Never raises for mail errors."""
    recipients = _recipients(row)
    if not recipients:
        row.status = STATUS_SKIPPED
        row.last_error = "no recipients configured"
        current_app.logger.warning("Notification %s for order %s skipped: no recipients", row.kind, row.order_id)
        return False

    subject, body = BUILDERS[row.kind](row.order)
    reply_to = row.order.primary_email if row.kind in ADMIN_KINDS else None
    row.attempts = (row.attempts or 0) + 1
    try:
        send_email(subject=subject, recipients=recipients, body=body, reply_to=reply_to)
    except Exception as e:
        row.status = STATUS_FAILED
        row.last_error = str(e)[:1000]
        current_app.logger.exception("Notification %s for order %s failed", row.kind, row.order_id)
        return False

    row.status = STATUS_SENT
    row.sent_at = datetime.utcnow()
    row.last_error = None
    current_app.logger.info("Notification %s sent to %s", row.kind, ", ".join(recipients))
    return True


def dispatch(rows) -> int:
    """Send already-committed rows. Returns the number sent."""
    sent = 0
    for row in rows or []:
        if row.status == STATUS_SENT:
            continue
        if send_one(row):
            sent += 1
    if rows:
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("Could not record notification outcomes")
    return sent


def dispatch_pending(limit: int = 100, max_attempts: int | None = None) -> dict:
    """Retry rows that are still pending or failed. Used by the CLI."""
    if max_attempts is None:
        max_attempts = int(current_app.config.get("NOTIFICATION_MAX_ATTEMPTS", 5))
    rows = (
        NotificationOutbox.query
        .filter(NotificationOutbox.status.in_((STATUS_PENDING, STATUS_FAILED)))
        .filter(NotificationOutbox.attempts < max_attempts)
        .order_by(NotificationOutbox.id.asc())
        .limit(limit)
        .all()
    )
    sent = dispatch(rows)
    return {"considered": len(rows), "sent": sent, "failed": sum(1 for r in rows if r.status == STATUS_FAILED)}
