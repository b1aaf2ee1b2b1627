# backend/services/order_status.py
"""
Read paths over stored orders: status polling, receipts, customer and
admin listings, plus the sweep over orders whose callback never arrived.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func, or_

from backend.extensions import db
from backend.models import Order
from backend.models.order import ORDER_STATUSES, PAYMENT_PAID, PAYMENT_PENDING, PAYMENT_STATUSES
from backend.api.utils.mpesa import MpesaClient, MpesaError
from backend.services import notifications
from backend.services.callback import PaymentDetails, is_success, mark_cancelled, mark_paid
from backend.services.errors import NotFound, ReceiptUnavailable, ValidationError


# --- lookups ---------------------------------------------------------------------------

def find_by_number(order_number: str) -> Order:
    order = Order.query.filter_by(order_number=(order_number or "").strip()).first()
    if not order:
        raise NotFound("Order not found")
    return order


def find_by_checkout_id(checkout_request_id: str) -> Order:
    order = Order.query.filter_by(mpesa_checkout_request_id=(checkout_request_id or "").strip()).first()
    if not order:
        raise NotFound("Payment request not found")
    return order


# --- status poller ------------------------------------------------------------------------

@dataclass
class StatusReport:
    order_number: str
    payment_status: str
    order_status: str
    last_updated: datetime | None
    gateway_status: dict | None = None

    def to_dict(self) -> dict:
        out = {
            "orderNumber": self.order_number,
            "paymentStatus": self.payment_status,
            "orderStatus": self.order_status,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }
        if self.gateway_status is not None:
            out["mpesaStatus"] = self.gateway_status
        return out


def poll(order: Order, client: MpesaClient) -> StatusReport:
    """
    Local status plus, when reachable, the raw gateway view. Gateway trouble
    only drops ``gateway_status``; it never fails the poll.
    """
    gateway_status = None
    if order.mpesa_checkout_request_id:
        try:
            gateway_status = client.query_status(order.mpesa_checkout_request_id, retries=1)
        except MpesaError as e:
            current_app.logger.warning(
                "M-Pesa status query failed for %s: %s", order.mpesa_checkout_request_id, e
            )

    return StatusReport(
        order_number=order.order_number,
        payment_status=order.payment_status,
        order_status=order.order_status,
        last_updated=order.updated_at,
        gateway_status=gateway_status,
    )


def query_order_status(order_number: str, client: MpesaClient) -> StatusReport:
    return poll(find_by_number(order_number), client)


def query_checkout_status(checkout_request_id: str, client: MpesaClient) -> StatusReport:
    return poll(find_by_checkout_id(checkout_request_id), client)


# --- receipts ------------------------------------------------------------------------------

def _receipt_number(order: Order) -> str:
    paid_on = order.mpesa_transaction_date or order.updated_at or datetime.utcnow()
    return f"RCT-{paid_on:%Y%m%d}-{order.id:06d}"


def get_receipt(order_number: str) -> dict:
    order = find_by_number(order_number)
    if order.payment_status != PAYMENT_PAID:
        raise ReceiptUnavailable("Receipt is only available for paid orders")

    if not order.receipt_number:
        # first writer wins; everyone rereads
        (
            db.session.query(Order)
            .filter(Order.id == order.id, Order.receipt_number.is_(None))
            .update({Order.receipt_number: _receipt_number(order)}, synchronize_session=False)
        )
        db.session.commit()
        db.session.refresh(order)
        current_app.logger.info("Receipt %s issued for order %s", order.receipt_number, order.order_number)

    return {
        "receiptNumber": order.receipt_number,
        "orderNumber": order.order_number,
        "issuedTo": {
            "name": order.primary_name,
            "email": order.primary_email,
            "phone": order.primary_phone,
            "facility": order.facility_name,
            "location": f"{order.facility_city}, {order.facility_county}",
        },
        "items": [it.to_dict() for it in order.items],
        "totalAmount": float(order.total_amount),
        "currency": order.currency,
        "paymentMethod": order.payment_method,
        "mpesaReceiptNumber": order.mpesa_receipt_number,
        "transactionDate": order.mpesa_transaction_date.isoformat() if order.mpesa_transaction_date else None,
        "paidBy": order.mpesa_paid_phone_number or order.mpesa_phone_number,
    }


# --- listings ------------------------------------------------------------------------------

def orders_for_customer(email: str) -> list[Order]:
    email = (email or "").strip().lower()
    return (
        Order.query
        .filter(or_(func.lower(Order.primary_email) == email, func.lower(Order.alt_email) == email))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def list_orders(page=1, limit=20, status=None, payment_status=None) -> dict:
    try:
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 20), 1), 100)
    except (TypeError, ValueError):
        raise ValidationError("page", "page and limit must be integers")

    q = Order.query
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError("status", f"must be one of: {', '.join(ORDER_STATUSES)}")
        q = q.filter(Order.order_status == status)
    if payment_status:
        if payment_status not in PAYMENT_STATUSES:
            raise ValidationError("paymentStatus", f"must be one of: {', '.join(PAYMENT_STATUSES)}")
        q = q.filter(Order.payment_status == payment_status)

    total = q.count()
    orders = (
        q.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "orders": orders,
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if total else 0,
    }


# --- sweep -----------------------------------------------------------------------------------

def reconcile_pending(client: MpesaClient, older_than_minutes: int = 10, limit: int = 200) -> dict:
    """
    Ask the gateway about pending orders that were pushed but never got a
    callback, and apply the answer through the same conditional transitions.
    Orders the gateway still reports as in progress are left alone.
    """
    cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
    orders = (
        Order.query
        .filter(Order.payment_status == PAYMENT_PENDING)
        .filter(Order.mpesa_checkout_request_id.isnot(None))
        .filter(Order.mpesa_initiated_at <= cutoff)
        .order_by(Order.id.asc())
        .limit(limit)
        .all()
    )

    stats = {"checked": len(orders), "paid": 0, "cancelled": 0, "in_progress": 0, "errors": 0}
    for order in orders:
        # a callback may have landed while earlier orders were being queried
        db.session.refresh(order)
        if order.is_terminal:
            current_app.logger.info("Sweep: order %s already %s, skipped", order.order_number, order.payment_status)
            continue

        try:
            result = client.query_status(order.mpesa_checkout_request_id, retries=1)
        except MpesaError as e:
            stats["errors"] += 1
            current_app.logger.warning("Sweep: query failed for order %s: %s", order.order_number, e)
            continue

        code = result.get("ResultCode")
        desc = result.get("ResultDesc")
        if code is None:
            stats["in_progress"] += 1
            continue

        if is_success(code):
            rows = mark_paid(order, PaymentDetails(), desc)
            if rows is not None:
                stats["paid"] += 1
                notifications.dispatch(rows)
        elif mark_cancelled(order, desc):
            stats["cancelled"] += 1

    current_app.logger.info("Pending sweep done: %s", stats)
    return stats
