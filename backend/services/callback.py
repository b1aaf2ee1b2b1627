# backend/services/callback.py
"""
M-Pesa STK callback reconciliation.

Safaricom retries a callback until it gets a response body, and it reads
only the body. ``reconcile`` therefore always returns an acknowledgement and
never raises.

Terminal transitions are conditional updates (``... WHERE payment_status =
'pending'``), so a second delivery of the same callback, or a callback racing
``flask reconcile-pending``, changes nothing. The one exception is an order
the sweep marked paid before its callback arrived: the late callback still
fills in the receipt fields.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from backend.extensions import db
from backend.models import Order
from backend.models.order import (
    ORDER_CANCELLED,
    ORDER_PROCESSING,
    PAYMENT_CANCELLED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
)
from backend.models.notification import KIND_PAYMENT_ADMIN, KIND_PAYMENT_CONFIRMATION
from backend.services import notifications

AMOUNT_TOLERANCE = Decimal("0.01")


@dataclass
class CallbackAck:
    result_code: int
    result_desc: str

    def to_dict(self) -> dict:
        return {"ResultCode": self.result_code, "ResultDesc": self.result_desc}


@dataclass
class PaymentDetails:
    receipt_number: str | None = None
    transaction_date: datetime | None = None
    phone_number: str | None = None
    amount: Decimal | None = None


def is_success(result_code) -> bool:
    return result_code is not None and str(result_code).strip() == "0"


def _parse_transaction_date(value) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.strptime(str(value).strip()[:14], "%Y%m%d%H%M%S")
    except ValueError:
        current_app.logger.warning("Unparseable M-Pesa TransactionDate: %r", value)
        return None


def _parse_amount(value) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def parse_metadata(callback_metadata) -> PaymentDetails:
    """CallbackMetadata.Item is a flat [{Name, Value}] list; every entry is optional."""
    items = []
    if isinstance(callback_metadata, dict):
        items = callback_metadata.get("Item") or []
    if not isinstance(items, list):
        items = []

    values = {}
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            values[item["Name"]] = item.get("Value")

    receipt = values.get("MpesaReceiptNumber")
    phone = values.get("PhoneNumber")
    return PaymentDetails(
        receipt_number=str(receipt) if receipt not in (None, "") else None,
        transaction_date=_parse_transaction_date(values.get("TransactionDate")),
        phone_number=str(phone) if phone not in (None, "") else None,
        amount=_parse_amount(values.get("Amount")),
    )


# --- transitions ---------------------------------------------------------------------

def _conditional_update(order: Order, changes: dict) -> bool:
    changes[Order.updated_at] = datetime.utcnow()
    updated = (
        db.session.query(Order)
        .filter(Order.id == order.id, Order.payment_status == PAYMENT_PENDING)
        .update(changes, synchronize_session=False)
    )
    if not updated:
        db.session.rollback()
        return False
    db.session.expire(order)
    return True


def mark_paid(order: Order, details: PaymentDetails, result_desc: str | None = None):
    """
    pending/pending -> paid/processing together with the receipt fields.
    Returns the queued notification rows, or None if the order was not pending.
    """
    changes = {
        Order.payment_status: PAYMENT_PAID,
        Order.order_status: ORDER_PROCESSING,
        Order.mpesa_receipt_number: details.receipt_number,
        Order.mpesa_transaction_date: details.transaction_date,
        Order.mpesa_paid_phone_number: details.phone_number,
        Order.mpesa_amount: details.amount,
        Order.mpesa_result_desc: (result_desc or "")[:255] or None,
    }
    if not _conditional_update(order, changes):
        return None

    rows = notifications.enqueue(order, KIND_PAYMENT_CONFIRMATION, KIND_PAYMENT_ADMIN)
    db.session.commit()

    if details.amount is not None and abs(details.amount - Decimal(str(order.total_amount))) > AMOUNT_TOLERANCE:
        current_app.logger.warning(
            "Order %s paid %s but total is %s", order.order_number, details.amount, order.total_amount
        )
    return rows


def fill_payment_details(order: Order, details: PaymentDetails) -> bool:
    """
    Store receipt fields on an order that was marked paid without them, as
    the pending sweep does. The status pair is left alone, and an order that
    already carries a receipt is never overwritten.
    """
    if not details.receipt_number:
        return False

    changes = {Order.mpesa_receipt_number: details.receipt_number, Order.updated_at: datetime.utcnow()}
    if details.transaction_date is not None:
        changes[Order.mpesa_transaction_date] = details.transaction_date
    if details.phone_number is not None:
        changes[Order.mpesa_paid_phone_number] = details.phone_number
    if details.amount is not None:
        changes[Order.mpesa_amount] = details.amount

    updated = (
        db.session.query(Order)
        .filter(
            Order.id == order.id,
            Order.payment_status == PAYMENT_PAID,
            Order.mpesa_receipt_number.is_(None),
        )
        .update(changes, synchronize_session=False)
    )
    if not updated:
        db.session.rollback()
        return False
    db.session.commit()
    db.session.expire(order)
    return True


def mark_cancelled(order: Order, result_desc: str | None = None) -> bool:
    changes = {
        Order.payment_status: PAYMENT_CANCELLED,
        Order.order_status: ORDER_CANCELLED,
        Order.mpesa_result_desc: (result_desc or "")[:255] or None,
    }
    if not _conditional_update(order, changes):
        return False
    db.session.commit()
    return True


# --- entry point -----------------------------------------------------------------------

def _stk_callback(payload) -> dict | None:
    if not isinstance(payload, dict):
        return None
    body = payload.get("Body")
    if not isinstance(body, dict):
        return None
    stk = body.get("stkCallback")
    if not isinstance(stk, dict) or "ResultCode" not in stk:
        return None
    return stk


def reconcile(payload) -> CallbackAck:
    stk = _stk_callback(payload)
    if stk is None:
        current_app.logger.error("Invalid M-Pesa callback format: %r", payload)
        return CallbackAck(1, "Invalid callback format")

    checkout_id = stk.get("CheckoutRequestID")
    result_code = stk.get("ResultCode")
    result_desc = stk.get("ResultDesc")
    current_app.logger.info(
        "M-Pesa callback: CheckoutRequestID=%s ResultCode=%s ResultDesc=%s",
        checkout_id, result_code, result_desc,
    )

    try:
        order = None
        if checkout_id:
            order = Order.query.filter_by(mpesa_checkout_request_id=str(checkout_id)).first()
        if not order:
            current_app.logger.error("Order not found for CheckoutRequestID: %s", checkout_id)
            return CallbackAck(1, "Order not found")

        if is_success(result_code):
            details = parse_metadata(stk.get("CallbackMetadata"))
            rows = mark_paid(order, details, result_desc)
            if rows is None:
                if fill_payment_details(order, details):
                    current_app.logger.info(
                        "Order %s already paid, receipt %s recorded", order.order_number, order.mpesa_receipt_number
                    )
                    return CallbackAck(0, "Payment details recorded")
                current_app.logger.info("Order %s already %s, callback ignored", order.order_number, order.payment_status)
                return CallbackAck(0, "Callback already processed")
            current_app.logger.info("Order %s paid, receipt %s", order.order_number, order.mpesa_receipt_number)
            notifications.dispatch(rows)
            return CallbackAck(0, "Payment received successfully")

        if not mark_cancelled(order, result_desc):
            current_app.logger.info("Order %s already %s, callback ignored", order.order_number, order.payment_status)
            return CallbackAck(0, "Callback already processed")
        current_app.logger.warning(
            "Payment failed for order %s: ResultCode=%s %s", order.order_number, result_code, result_desc
        )
        return CallbackAck(0, "Callback received and processed")

    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("M-Pesa callback processing failed")
        return CallbackAck(1, "Error processing callback")
