"""
Callback reconciler: success, cancellation, unknown orders, malformed
payloads and repeated delivery.
"""
import logging
from datetime import datetime
from decimal import Decimal

import pytest

from backend.models import NotificationOutbox
from backend.services import callback, checkout
from conftest import order_payload, paid_metadata, stk_callback


@pytest.fixture
def pushed_order(app, mpesa):
    return checkout.create_order(order_payload(orderNumber="ORD-CB-1"), mpesa).order


# =============================================================================
# METADATA
# =============================================================================


class TestParseMetadata:
    def test_all_fields(self):
        details = callback.parse_metadata({"Item": paid_metadata()})
        assert details.receipt_number == "NLJ7RT61SV"
        assert details.transaction_date == datetime(2026, 10, 18, 10, 30, 45)
        assert details.phone_number == "254712345678"
        assert details.amount == Decimal("3250")

    @pytest.mark.parametrize("metadata", [None, {}, {"Item": None}, {"Item": "junk"}, {"Item": [{"Value": 1}]}])
    def test_missing_or_malformed(self, metadata):
        details = callback.parse_metadata(metadata)
        assert details == callback.PaymentDetails()

    def test_unparseable_date_is_dropped(self, app):
        details = callback.parse_metadata({"Item": [{"Name": "TransactionDate", "Value": "yesterday"}]})
        assert details.transaction_date is None


@pytest.mark.parametrize("code,expected", [(0, True), ("0", True), (1032, False), ("1", False), (None, False)])
def test_is_success(code, expected):
    assert callback.is_success(code) is expected


# =============================================================================
# RECONCILE
# =============================================================================


class TestReconcile:
    def test_successful_payment(self, pushed_order, outbox):
        ack = callback.reconcile(stk_callback(pushed_order.mpesa_checkout_request_id, 0, metadata=paid_metadata()))

        assert ack.to_dict() == {"ResultCode": 0, "ResultDesc": "Payment received successfully"}
        assert pushed_order.payment_status == "paid"
        assert pushed_order.order_status == "processing"
        assert pushed_order.mpesa_receipt_number == "NLJ7RT61SV"
        assert pushed_order.mpesa_transaction_date == datetime(2026, 10, 18, 10, 30, 45)
        assert pushed_order.mpesa_paid_phone_number == "254712345678"
        assert pushed_order.mpesa_amount == Decimal("3250")

        kinds = {r.kind for r in NotificationOutbox.query.filter_by(order_id=pushed_order.id)}
        assert {"payment_confirmation", "payment_admin"} <= kinds
        subjects = [m.subject for m in outbox]
        assert f"Payment Confirmed - Order {pushed_order.order_number}" in subjects
        assert f"PAID - {pushed_order.order_number} - Ready for Processing" in subjects

    def test_cancelled_by_user(self, pushed_order, outbox):
        ack = callback.reconcile(stk_callback(pushed_order.mpesa_checkout_request_id, 1032, "Request cancelled by user"))

        assert ack.to_dict() == {"ResultCode": 0, "ResultDesc": "Callback received and processed"}
        assert pushed_order.payment_status == "cancelled"
        assert pushed_order.order_status == "cancelled"
        assert pushed_order.mpesa_result_desc == "Request cancelled by user"
        assert pushed_order.mpesa_receipt_number is None
        assert outbox == []

    def test_unknown_checkout_id(self, app):
        ack = callback.reconcile(stk_callback("ws_CO_UNKNOWN", 0, metadata=paid_metadata()))
        assert ack.to_dict() == {"ResultCode": 1, "ResultDesc": "Order not found"}

    @pytest.mark.parametrize(
        "payload",
        [None, [], {}, {"Body": None}, {"Body": {}}, {"Body": {"stkCallback": {"CheckoutRequestID": "x"}}}],
    )
    def test_invalid_format(self, app, payload):
        ack = callback.reconcile(payload)
        assert ack.to_dict() == {"ResultCode": 1, "ResultDesc": "Invalid callback format"}

    def test_success_without_metadata(self, pushed_order):
        ack = callback.reconcile(stk_callback(pushed_order.mpesa_checkout_request_id, 0))
        assert ack.result_code == 0
        assert pushed_order.payment_status == "paid"
        assert pushed_order.mpesa_receipt_number is None

    def test_amount_mismatch_is_logged_not_rejected(self, pushed_order, caplog):
        with caplog.at_level(logging.WARNING):
            callback.reconcile(stk_callback(
                pushed_order.mpesa_checkout_request_id, 0, metadata=paid_metadata(amount=3000),
            ))
        assert pushed_order.payment_status == "paid"
        assert "paid 3000 but total is" in caplog.text


# =============================================================================
# REPEATED DELIVERY
# =============================================================================


class TestIdempotence:
    def test_duplicate_success_callback(self, pushed_order, outbox):
        payload = stk_callback(pushed_order.mpesa_checkout_request_id, 0, metadata=paid_metadata())
        callback.reconcile(payload)
        sent_after_first = len(outbox)

        ack = callback.reconcile(payload)

        assert ack.to_dict() == {"ResultCode": 0, "ResultDesc": "Callback already processed"}
        assert len(outbox) == sent_after_first
        payment_rows = NotificationOutbox.query.filter_by(order_id=pushed_order.id, kind="payment_confirmation")
        assert payment_rows.count() == 1

    def test_late_failure_does_not_undo_payment(self, pushed_order):
        checkout_id = pushed_order.mpesa_checkout_request_id
        callback.reconcile(stk_callback(checkout_id, 0, metadata=paid_metadata()))
        ack = callback.reconcile(stk_callback(checkout_id, 1, "The balance is insufficient"))

        assert ack.result_desc == "Callback already processed"
        assert pushed_order.payment_status == "paid"
        assert pushed_order.order_status == "processing"

    def test_late_success_does_not_revive_cancelled_order(self, pushed_order):
        checkout_id = pushed_order.mpesa_checkout_request_id
        callback.reconcile(stk_callback(checkout_id, 1032))
        ack = callback.reconcile(stk_callback(checkout_id, 0, metadata=paid_metadata()))

        assert ack.result_desc == "Callback already processed"
        assert pushed_order.payment_status == "cancelled"
        assert pushed_order.mpesa_receipt_number is None

    def test_conditional_transition_helpers(self, pushed_order):
        assert callback.mark_cancelled(pushed_order, "Request cancelled by user") is True
        assert callback.mark_cancelled(pushed_order, "again") is False
        assert callback.mark_paid(pushed_order, callback.PaymentDetails(receipt_number="X")) is None
        assert pushed_order.mpesa_result_desc == "Request cancelled by user"
