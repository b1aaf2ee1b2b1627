"""
Order creation: validation, storage before the push, correlation ids,
duplicate order numbers and gateway failures.
"""
import copy
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from backend.api.utils.mpesa import GatewayRejected, GatewayUnreachable, STK_PUSH_PATH
from backend.extensions import db
from backend.models import NotificationOutbox, Order
from backend.models.notification import STATUS_SENT
from backend.services import checkout
from backend.services.errors import DuplicateOrderNumber, ValidationError
from conftest import order_payload, unreachable


# =============================================================================
# HAPPY PATH
# =============================================================================


class TestCreateOrder:
    def test_stored_pending_with_correlation_ids(self, app, mpesa, gateway, outbox):
        result = checkout.create_order(order_payload(orderNumber="ORD-TEST-0001"), mpesa)

        order = Order.query.filter_by(order_number="ORD-TEST-0001").one()
        assert order.payment_status == "pending"
        assert order.order_status == "pending"
        assert order.total_amount == Decimal("3250.00")
        assert order.currency == "KES"
        assert order.mpesa_checkout_request_id == result.push.checkout_request_id == "ws_CO_TEST000001"
        assert order.mpesa_merchant_request_id == "29115-00001-1"
        assert order.mpesa_phone_number == "254712345678"
        assert order.mpesa_initiated_at is not None
        assert [it.name for it in order.items] == ["Nitrile Examination Gloves", "Syringe 5ml"]

        push = gateway.calls(STK_PUSH_PATH)[0]["json"]
        assert push["Amount"] == 3250
        assert push["PhoneNumber"] == "254712345678"
        assert push["AccountReference"] == "ORD-TEST-000"

    def test_generated_order_number(self, app, mpesa):
        result = checkout.create_order(order_payload(), mpesa)
        assert result.order.order_number.startswith("ORD-")
        assert len(result.order.order_number) > 10

    def test_emails_lowercased(self, app, mpesa):
        result = checkout.create_order(order_payload(), mpesa)
        assert result.order.primary_email == "jane.wanjiku@example.com"

    def test_customer_and_operations_notified(self, app, mpesa, outbox):
        result = checkout.create_order(order_payload(), mpesa)

        rows = NotificationOutbox.query.filter_by(order_id=result.order.id).all()
        assert sorted(r.kind for r in rows) == ["order_admin", "order_confirmation"]
        assert all(r.status == STATUS_SENT for r in rows)

        recipients = sorted(tuple(m.recipients) for m in outbox)
        assert recipients == [("jane.wanjiku@example.com",), ("ops@accordmedical.co.ke",)]
        customer = next(m for m in outbox if m.recipients == ["jane.wanjiku@example.com"])
        assert result.order.order_number in customer.subject
        assert "KES 3,250.00" in customer.body

    def test_mail_failure_does_not_fail_checkout(self, app, mpesa, monkeypatch):
        def broken(**kwargs):
            raise OSError("smtp down")

        monkeypatch.setattr("backend.services.notifications.send_email", broken)
        result = checkout.create_order(order_payload(), mpesa)

        assert result.order.mpesa_checkout_request_id
        rows = NotificationOutbox.query.filter_by(order_id=result.order.id).all()
        assert {r.status for r in rows} == {"failed"}
        assert all("smtp down" in r.last_error for r in rows)


# =============================================================================
# VALIDATION
# =============================================================================


def _without(data, path):
    data = copy.deepcopy(data)
    section, _, key = path.partition(".")
    if key:
        data[section].pop(key)
    else:
        data.pop(section)
    return data


class TestValidation:
    @pytest.mark.parametrize(
        "path",
        [
            "primaryContact",
            "primaryContact.name",
            "primaryContact.jobTitle",
            "facility.address",
            "alternativeContact.relationship",
            "items",
            "totalAmount",
        ],
    )
    def test_required_fields(self, path):
        with pytest.raises(ValidationError) as exc:
            checkout.parse_order_request(_without(order_payload(), path))
        assert exc.value.field == path

    @pytest.mark.parametrize("phone", ["0712345678", "+254712345678", "25471234567", "2547123456789", "254-71234567"])
    def test_phone_format(self, phone):
        data = order_payload()
        data["primaryContact"]["phone"] = phone
        with pytest.raises(ValidationError) as exc:
            checkout.parse_order_request(data)
        assert exc.value.field == "primaryContact.phone"

    def test_invalid_email(self):
        data = order_payload()
        data["alternativeContact"]["email"] = "not-an-email"
        with pytest.raises(ValidationError) as exc:
            checkout.parse_order_request(data)
        assert exc.value.field == "alternativeContact.email"

    def test_unknown_facility_type(self):
        data = order_payload()
        data["facility"]["type"] = "Spaceport"
        with pytest.raises(ValidationError) as exc:
            checkout.parse_order_request(data)
        assert exc.value.field == "facility.type"

    def test_gps_outside_kenya(self):
        data = order_payload()
        data["facility"]["GPS_coordinates"] = {"latitude": 51.5, "longitude": 36.8}
        with pytest.raises(ValidationError) as exc:
            checkout.parse_order_request(data)
        assert exc.value.field == "facility.GPS_coordinates.latitude"

    @pytest.mark.parametrize("qty", [0, -1, 1.5, "two", True])
    def test_bad_quantity(self, qty):
        data = order_payload()
        data["items"][0]["quantity"] = qty
        with pytest.raises(ValidationError) as exc:
            checkout.parse_order_request(data)
        assert exc.value.field == "items[0].quantity"

    def test_negative_price(self):
        data = order_payload()
        data["items"][1]["price"] = -5
        with pytest.raises(ValidationError) as exc:
            checkout.parse_order_request(data)
        assert exc.value.field == "items[1].price"

    def test_zero_total(self):
        with pytest.raises(ValidationError) as exc:
            checkout.parse_order_request(order_payload(totalAmount=0))
        assert exc.value.field == "totalAmount"

    def test_only_mpesa(self):
        with pytest.raises(ValidationError) as exc:
            checkout.parse_order_request(order_payload(paymentMethod="card"))
        assert exc.value.field == "paymentMethod"

    def test_total_mismatch(self):
        req = checkout.parse_order_request(order_payload(totalAmount=3000))
        with pytest.raises(ValidationError) as exc:
            checkout.check_total(req)
        assert exc.value.field == "totalAmount"
        assert "Expected 3250" in exc.value.message

    def test_total_within_a_cent(self):
        req = checkout.parse_order_request(order_payload(totalAmount="3250.01"))
        assert checkout.check_total(req) == Decimal("3250")

    def test_invalid_request_stores_nothing_and_pushes_nothing(self, app, mpesa, gateway):
        with pytest.raises(ValidationError):
            checkout.create_order(order_payload(totalAmount=1), mpesa)
        assert Order.query.count() == 0
        assert gateway.requests == []


# =============================================================================
# DUPLICATES AND GATEWAY FAILURES
# =============================================================================


class TestFailures:
    def test_duplicate_order_number(self, app, mpesa, gateway):
        checkout.create_order(order_payload(orderNumber="ORD-DUP"), mpesa)
        with pytest.raises(DuplicateOrderNumber):
            checkout.create_order(order_payload(orderNumber="ORD-DUP"), mpesa)

        assert Order.query.filter_by(order_number="ORD-DUP").count() == 1
        assert len(gateway.calls(STK_PUSH_PATH)) == 1

    def test_gateway_rejection_keeps_pending_order(self, app, mpesa, gateway, outbox):
        gateway.push.append((400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"}))

        with pytest.raises(GatewayRejected) as exc:
            checkout.create_order(order_payload(orderNumber="ORD-REJ"), mpesa)
        assert exc.value.order_number == "ORD-REJ"

        order = Order.query.filter_by(order_number="ORD-REJ").one()
        assert order.payment_status == "pending"
        assert order.order_status == "pending"
        assert order.mpesa_checkout_request_id is None
        assert NotificationOutbox.query.count() == 0
        assert outbox == []

    def test_gateway_unreachable_not_retried(self, app, mpesa, gateway):
        gateway.push.append(unreachable())
        with pytest.raises(GatewayUnreachable):
            checkout.create_order(order_payload(orderNumber="ORD-NET"), mpesa)

        assert len(gateway.calls(STK_PUSH_PATH)) == 1
        assert Order.query.filter_by(order_number="ORD-NET").one().payment_status == "pending"


def _fail_commits_when(monkeypatch, condition):
    real_commit = db.session.commit

    def commit():
        if condition():
            raise SQLAlchemyError("disk I/O error")
        real_commit()

    monkeypatch.setattr(db.session, "commit", commit)


def _correlation_ids_pending():
    return any(isinstance(o, Order) and o.mpesa_checkout_request_id for o in db.session.dirty)


class TestRecordPushFailure:
    def test_customer_still_notified_when_ids_cannot_be_stored(self, app, mpesa, monkeypatch):
        _fail_commits_when(monkeypatch, _correlation_ids_pending)

        result = checkout.create_order(order_payload(orderNumber="ORD-IDS"), mpesa)

        assert result.push.checkout_request_id == "ws_CO_TEST000001"
        order = Order.query.filter_by(order_number="ORD-IDS").one()
        assert order.mpesa_checkout_request_id is None
        assert order.payment_status == "pending"
        kinds = sorted(r.kind for r in NotificationOutbox.query.filter_by(order_id=order.id))
        assert kinds == ["order_admin", "order_confirmation"]
        assert len(result.notifications) == 2

    def test_nothing_queued_when_database_is_gone(self, app, mpesa, monkeypatch):
        def after_store():
            return _correlation_ids_pending() or any(isinstance(o, NotificationOutbox) for o in db.session.new)

        _fail_commits_when(monkeypatch, after_store)

        result = checkout.create_order(order_payload(orderNumber="ORD-DOWN"), mpesa)

        assert result.push.checkout_request_id
        assert result.notifications == []
        assert NotificationOutbox.query.count() == 0
        assert Order.query.filter_by(order_number="ORD-DOWN").one().payment_status == "pending"
