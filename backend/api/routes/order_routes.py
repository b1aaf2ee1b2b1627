from flask import Blueprint, request, jsonify, current_app

from backend.extensions import db, get_mpesa
from backend.auth import roles_required
from backend.models.user import ROLE_ADMIN, ROLE_MANAGER
from backend.api.utils.mpesa import MpesaError
from backend.services import callback, checkout, order_status
from backend.services.errors import CheckoutError, ValidationError

order_bp = Blueprint("order_bp", __name__, url_prefix="/api/orders")


def _error(e: CheckoutError):
    body = {"ok": False, "error": str(e)}
    if isinstance(e, ValidationError):
        body = {"ok": False, "error": "Validation error", "field": e.field, "details": e.message}
    return jsonify(body), e.status_code


@order_bp.post("")
def create_order():
    """
    Create an order and send the M-Pesa STK prompt to primaryContact.phone.
    Body: {orderNumber?, primaryContact, facility, alternativeContact, items[], totalAmount, paymentMethod?}
    """
    data = request.get_json(silent=True)
    try:
        result = checkout.create_order(data, get_mpesa())
    except CheckoutError as e:
        return _error(e)
    except MpesaError as e:
        # order is stored and stays pending
        return jsonify({
            "ok": False,
            "error": "Failed to initiate M-Pesa payment",
            "details": str(e),
            "orderNumber": getattr(e, "order_number", None),
        }), 500
    except Exception:
        db.session.rollback()
        current_app.logger.exception("create_order failed")
        return jsonify({"ok": False, "error": "Failed to create order"}), 500

    o = result.order
    return jsonify({
        "ok": True,
        "orderId": o.order_number,
        "facility": {
            "name": o.facility_name,
            "type": o.facility_type,
            "location": f"{o.facility_city}, {o.facility_county}",
        },
        "primaryContact": {"name": o.primary_name, "phone": o.primary_phone},
        "alternativeContact": {"name": o.alt_name, "phone": o.alt_phone},
        "totalAmount": float(o.total_amount),
        "itemCount": len(o.items),
        "paymentStatus": o.payment_status,
        "checkoutRequestID": result.push.checkout_request_id,
        "nextSteps": (
            f"M-Pesa STK prompt sent to {o.primary_name}. "
            f"Contact {o.alt_name} if needed."
        ),
    }), 201


@order_bp.post("/mpesa/callback")
def mpesa_callback():
    """Called by Safaricom. Always HTTP 200; the gateway only reads the body."""
    payload = request.get_json(silent=True)
    try:
        ack = callback.reconcile(payload)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("M-Pesa callback crashed")
        ack = callback.CallbackAck(1, "Error processing callback")
    return jsonify(ack.to_dict()), 200


@order_bp.get("/status/<checkout_request_id>")
def payment_status_by_checkout(checkout_request_id: str):
    try:
        report = order_status.query_checkout_status(checkout_request_id, get_mpesa())
    except CheckoutError as e:
        return _error(e)
    return jsonify({"ok": True, **report.to_dict()}), 200


@order_bp.get("/customer/<email>")
def customer_orders(email: str):
    orders = order_status.orders_for_customer(email)
    return jsonify({
        "ok": True,
        "count": len(orders),
        "orders": [o.to_public_dict() for o in orders],
    }), 200


@order_bp.get("/admin/all")
@roles_required(ROLE_ADMIN, ROLE_MANAGER)
def admin_all_orders():
    try:
        res = order_status.list_orders(
            page=request.args.get("page", 1),
            limit=request.args.get("limit", 20),
            status=(request.args.get("status") or "").strip() or None,
            payment_status=(request.args.get("paymentStatus") or "").strip() or None,
        )
    except CheckoutError as e:
        return _error(e)
    return jsonify({
        "ok": True,
        "count": len(res["orders"]),
        "pagination": {"total": res["total"], "page": res["page"], "pages": res["pages"]},
        "orders": [o.to_admin_dict() for o in res["orders"]],
    }), 200


@order_bp.get("/<order_number>")
def get_order(order_number: str):
    try:
        o = order_status.find_by_number(order_number)
    except CheckoutError as e:
        return _error(e)
    return jsonify({"ok": True, "order": o.to_public_dict()}), 200


@order_bp.get("/<order_number>/status")
def order_payment_status(order_number: str):
    try:
        report = order_status.query_order_status(order_number, get_mpesa())
    except CheckoutError as e:
        return _error(e)
    return jsonify({"ok": True, **report.to_dict()}), 200


@order_bp.get("/<order_number>/receipt")
def order_receipt(order_number: str):
    try:
        receipt = order_status.get_receipt(order_number)
    except CheckoutError as e:
        return _error(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("receipt for %s failed", order_number)
        return jsonify({"ok": False, "error": "Failed to generate receipt"}), 500
    return jsonify({"ok": True, "receipt": receipt}), 200
