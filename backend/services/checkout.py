# backend/services/checkout.py
"""
Checkout: validate an order request, store it, then ask M-Pesa to push a
payment prompt to the customer's phone.

The order row is committed before the gateway is called. If the push fails
the order stays pending/pending without correlation ids, so there is always
an audit record to follow up on.
"""
from __future__ import annotations

import math
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.extensions import db
from backend.models import Order, OrderItem
from backend.models.order import (
    CURRENCY,
    ORDER_PENDING,
    PAYMENT_METHOD_MPESA,
    PAYMENT_PENDING,
)
from backend.models.notification import KIND_ORDER_ADMIN, KIND_ORDER_CONFIRMATION
from backend.api.utils.mpesa import MpesaClient, MpesaError, StkPushResult
from backend.services import notifications
from backend.services.errors import DuplicateOrderNumber, ValidationError

PHONE_RE = re.compile(r"^254\d{9}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

AMOUNT_TOLERANCE = Decimal("0.01")

FACILITY_TYPES = (
    "Hospital",
    "Clinic",
    "Medical Center",
    "Laboratory",
    "Pharmacy",
    "Dispensary",
    "Health Center",
    "Private Practice",
    "Diagnostic Center",
    "Nursing Home",
)

# Kenya bounding box
LATITUDE_RANGE = (-12.0, 5.0)
LONGITUDE_RANGE = (28.0, 42.0)


# --- request structure ------------------------------------------------------

@dataclass
class PrimaryContact:
    name: str
    email: str
    phone: str
    job_title: str


@dataclass
class Facility:
    name: str
    type: str
    address: str
    city: str
    county: str
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass
class AlternativeContact:
    name: str
    email: str
    phone: str
    relationship: str


@dataclass
class LineItem:
    name: str
    quantity: int
    price: Decimal
    consumable_id: str | None = None
    specifications: str | None = None

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class OrderRequest:
    primary: PrimaryContact
    facility: Facility
    alternative: AlternativeContact
    items: list[LineItem]
    total_amount: Decimal
    order_number: str | None = None
    payment_method: str = PAYMENT_METHOD_MPESA


@dataclass
class CheckoutResult:
    order: Order
    push: StkPushResult
    notifications: list = field(default_factory=list)


# --- parsing helpers ----------------------------------------------------------

def _to_decimal(val, field_name: str) -> Decimal:
    if isinstance(val, bool) or val is None:
        raise ValidationError(field_name, "must be a number")
    try:
        d = Decimal(str(val).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(field_name, "must be a number")
    if not d.is_finite():
        raise ValidationError(field_name, "must be a finite number")
    return d


def _to_float(val, field_name: str) -> float:
    if isinstance(val, bool):
        raise ValidationError(field_name, "must be a number")
    try:
        f = float(val)
    except (TypeError, ValueError):
        raise ValidationError(field_name, "must be a number")
    if math.isnan(f) or math.isinf(f):
        raise ValidationError(field_name, "must be a finite number")
    return f


def _section(data: dict, key: str) -> dict:
    obj = data.get(key)
    if not isinstance(obj, dict) or not obj:
        raise ValidationError(key, "is required")
    return obj


def _text(obj: dict, key: str, prefix: str, min_len: int = 1, max_len: int | None = None) -> str:
    name = f"{prefix}.{key}"
    raw = obj.get(key)
    if raw is None or not isinstance(raw, (str, int)) or isinstance(raw, bool):
        raise ValidationError(name, "is required")
    s = str(raw).strip()
    if not s:
        raise ValidationError(name, "is required")
    if len(s) < min_len:
        raise ValidationError(name, f"must be at least {min_len} characters")
    if max_len is not None and len(s) > max_len:
        raise ValidationError(name, f"must be at most {max_len} characters")
    return s


def _optional_text(obj: dict, key: str) -> str | None:
    raw = obj.get(key)
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None


def _phone(obj: dict, prefix: str) -> str:
    phone = _text(obj, "phone", prefix)
    if not PHONE_RE.match(phone):
        raise ValidationError(f"{prefix}.phone", "must be in format 254XXXXXXXXX")
    return phone


def _email(obj: dict, prefix: str) -> str:
    email = _text(obj, "email", prefix).lower()
    if not EMAIL_RE.match(email):
        raise ValidationError(f"{prefix}.email", "is invalid")
    return email


def _parse_primary(data: dict) -> PrimaryContact:
    obj = _section(data, "primaryContact")
    return PrimaryContact(
        name=_text(obj, "name", "primaryContact", 3, 100),
        email=_email(obj, "primaryContact"),
        phone=_phone(obj, "primaryContact"),
        job_title=_text(obj, "jobTitle", "primaryContact", 3, 50),
    )


def _parse_facility(data: dict) -> Facility:
    obj = _section(data, "facility")
    ftype = _text(obj, "type", "facility")
    if ftype not in FACILITY_TYPES:
        raise ValidationError("facility.type", f"must be one of: {', '.join(FACILITY_TYPES)}")

    lat = lon = None
    gps = obj.get("GPS_coordinates")
    if gps is not None:
        if not isinstance(gps, dict):
            raise ValidationError("facility.GPS_coordinates", "must be an object")
        if gps.get("latitude") is not None:
            lat = _to_float(gps["latitude"], "facility.GPS_coordinates.latitude")
            if not LATITUDE_RANGE[0] <= lat <= LATITUDE_RANGE[1]:
                raise ValidationError("facility.GPS_coordinates.latitude", "is out of range")
        if gps.get("longitude") is not None:
            lon = _to_float(gps["longitude"], "facility.GPS_coordinates.longitude")
            if not LONGITUDE_RANGE[0] <= lon <= LONGITUDE_RANGE[1]:
                raise ValidationError("facility.GPS_coordinates.longitude", "is out of range")

    return Facility(
        name=_text(obj, "name", "facility", 5, 150),
        type=ftype,
        address=_text(obj, "address", "facility", 10, 200),
        city=_text(obj, "city", "facility", 2, 50),
        county=_text(obj, "county", "facility", 1, 50),
        postal_code=_optional_text(obj, "postalCode"),
        latitude=lat,
        longitude=lon,
    )


def _parse_alternative(data: dict) -> AlternativeContact:
    obj = _section(data, "alternativeContact")
    return AlternativeContact(
        name=_text(obj, "name", "alternativeContact", 3, 100),
        email=_email(obj, "alternativeContact"),
        phone=_phone(obj, "alternativeContact"),
        relationship=_text(obj, "relationship", "alternativeContact", 3, 50),
    )


def _parse_items(data: dict) -> list[LineItem]:
    items_in = data.get("items")
    if not isinstance(items_in, list) or not items_in:
        raise ValidationError("items", "must contain at least one item")

    items = []
    for i, it in enumerate(items_in):
        prefix = f"items[{i}]"
        if not isinstance(it, dict):
            raise ValidationError(prefix, "must be an object")

        qty_raw = it.get("quantity")
        if isinstance(qty_raw, bool) or not isinstance(qty_raw, (int, float, str)):
            raise ValidationError(f"{prefix}.quantity", "must be an integer")
        qty_dec = _to_decimal(qty_raw, f"{prefix}.quantity")
        if qty_dec != qty_dec.to_integral_value():
            raise ValidationError(f"{prefix}.quantity", "must be an integer")
        qty = int(qty_dec)
        if qty < 1:
            raise ValidationError(f"{prefix}.quantity", "must be at least 1")

        price = _to_decimal(it.get("price"), f"{prefix}.price")
        if price < 0:
            raise ValidationError(f"{prefix}.price", "must not be negative")

        consumable_id = it.get("consumableId")
        items.append(LineItem(
            name=_text(it, "name", prefix, 1, 150),
            quantity=qty,
            price=price,
            consumable_id=str(consumable_id) if consumable_id not in (None, "") else None,
            specifications=_optional_text(it, "specifications"),
        ))
    return items


def parse_order_request(data) -> OrderRequest:
    """Structural validation. Raises ValidationError naming the first bad field."""
    if not isinstance(data, dict):
        raise ValidationError("body", "must be a JSON object")

    primary = _parse_primary(data)
    facility = _parse_facility(data)
    alternative = _parse_alternative(data)
    items = _parse_items(data)

    if data.get("totalAmount") in (None, ""):
        raise ValidationError("totalAmount", "is required")
    total = _to_decimal(data.get("totalAmount"), "totalAmount")
    if total <= 0:
        raise ValidationError("totalAmount", "must be greater than 0")

    method = (str(data.get("paymentMethod") or PAYMENT_METHOD_MPESA)).strip().lower()
    if method != PAYMENT_METHOD_MPESA:
        raise ValidationError("paymentMethod", "only 'mpesa' is supported")

    order_number = data.get("orderNumber")
    if order_number is not None:
        order_number = str(order_number).strip() or None
        if order_number and len(order_number) > 40:
            raise ValidationError("orderNumber", "must be at most 40 characters")

    return OrderRequest(
        primary=primary,
        facility=facility,
        alternative=alternative,
        items=items,
        total_amount=total,
        order_number=order_number,
        payment_method=method,
    )


def check_total(req: OrderRequest) -> Decimal:
    calculated = sum((it.subtotal for it in req.items), Decimal("0"))
    if abs(calculated - req.total_amount) > AMOUNT_TOLERANCE:
        raise ValidationError(
            "totalAmount",
            f"Total amount mismatch. Expected {calculated}, got {req.total_amount}",
        )
    return calculated


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


# --- persistence --------------------------------------------------------------

def _build_order(req: OrderRequest, order_number: str) -> Order:
    order = Order(
        order_number=order_number,
        primary_name=req.primary.name,
        primary_email=req.primary.email,
        primary_phone=req.primary.phone,
        primary_job_title=req.primary.job_title,
        facility_name=req.facility.name,
        facility_type=req.facility.type,
        facility_address=req.facility.address,
        facility_city=req.facility.city,
        facility_county=req.facility.county,
        facility_postal_code=req.facility.postal_code,
        facility_latitude=req.facility.latitude,
        facility_longitude=req.facility.longitude,
        alt_name=req.alternative.name,
        alt_email=req.alternative.email,
        alt_phone=req.alternative.phone,
        alt_relationship=req.alternative.relationship,
        total_amount=req.total_amount,
        currency=CURRENCY,
        payment_method=req.payment_method,
        payment_status=PAYMENT_PENDING,
        order_status=ORDER_PENDING,
    )
    for pos, it in enumerate(req.items):
        order.items.append(OrderItem(
            position=pos,
            consumable_id=it.consumable_id,
            name=it.name,
            quantity=it.quantity,
            price=it.price,
            specifications=it.specifications,
        ))
    return order


def store_order(req: OrderRequest) -> Order:
    order_number = req.order_number or generate_order_number()

    if Order.query.filter_by(order_number=order_number).first():
        raise DuplicateOrderNumber(order_number)

    order = _build_order(req, order_number)
    db.session.add(order)
    try:
        db.session.commit()
    except IntegrityError:
        # lost the race on the unique order_number
        db.session.rollback()
        raise DuplicateOrderNumber(order_number)

    current_app.logger.info(
        "Order created: id=%s number=%s amount=%s", order.id, order.order_number, order.total_amount
    )
    return order


def _record_push(order: Order, push: StkPushResult) -> list:
    """Correlation ids + queued e-mails in one commit. Failure here is logged only."""
    try:
        order.mpesa_checkout_request_id = push.checkout_request_id
        order.mpesa_merchant_request_id = push.merchant_request_id
        order.mpesa_phone_number = order.primary_phone
        order.mpesa_initiated_at = datetime.utcnow()
        rows = notifications.enqueue(order, KIND_ORDER_CONFIRMATION, KIND_ORDER_ADMIN)
        db.session.commit()
        return rows
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Could not store M-Pesa ids %s for order %s", push.checkout_request_id, order.order_number
        )

    # the push went out; still tell the customer
    try:
        rows = notifications.enqueue(order, KIND_ORDER_CONFIRMATION, KIND_ORDER_ADMIN)
        db.session.commit()
        return rows
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Could not queue notifications for order %s", order.order_number)
        return []


# --- public API ---------------------------------------------------------------

def create_order(data, client: MpesaClient) -> CheckoutResult:
    """
    Raises ValidationError / DuplicateOrderNumber before anything is stored,
    MpesaError after the order is stored (order left pending).
    """
    req = parse_order_request(data)
    check_total(req)

    order = store_order(req)

    try:
        push = client.initiate_push(
            order.primary_phone,
            order.total_amount,
            order.order_number,
            order.order_number,
        )
    except MpesaError as e:
        current_app.logger.exception("M-Pesa initiation failed for order %s", order.order_number)
        e.order_number = order.order_number
        raise

    current_app.logger.info("M-Pesa STK push initiated: %s (order %s)", push.checkout_request_id, order.order_number)

    rows = _record_push(order, push)
    notifications.dispatch(rows)
    return CheckoutResult(order=order, push=push, notifications=rows)
