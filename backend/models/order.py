# backend/models/order.py
from datetime import datetime
from backend.extensions import db

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_CANCELLED = "cancelled"
# in the schema for manual bookkeeping, never set by the M-Pesa flow
PAYMENT_PARTIAL = "partial"
PAYMENT_OVERDUE = "overdue"
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_CANCELLED, PAYMENT_PARTIAL, PAYMENT_OVERDUE)

ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ORDER_STATUSES = (ORDER_PENDING, ORDER_PROCESSING, ORDER_SHIPPED, ORDER_DELIVERED, ORDER_CANCELLED)

CURRENCY = "KES"
PAYMENT_METHOD_MPESA = "mpesa"


class Order(db.Model):
    __tablename__ = "checkout_order"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(40), unique=True, index=True, nullable=False)

    # primary contact (person placing the order)
    primary_name = db.Column(db.String(100), nullable=False)
    primary_email = db.Column(db.String(255), nullable=False, index=True)
    primary_phone = db.Column(db.String(12), nullable=False)
    primary_job_title = db.Column(db.String(50), nullable=False)

    # facility
    facility_name = db.Column(db.String(150), nullable=False)
    facility_type = db.Column(db.String(40), nullable=False)
    facility_address = db.Column(db.String(200), nullable=False)
    facility_city = db.Column(db.String(50), nullable=False)
    facility_county = db.Column(db.String(50), nullable=False)
    facility_postal_code = db.Column(db.String(20), nullable=True)
    facility_latitude = db.Column(db.Float, nullable=True)
    facility_longitude = db.Column(db.Float, nullable=True)

    # alternative / emergency contact
    alt_name = db.Column(db.String(100), nullable=False)
    alt_email = db.Column(db.String(255), nullable=False, index=True)
    alt_phone = db.Column(db.String(12), nullable=False)
    alt_relationship = db.Column(db.String(50), nullable=False)

    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default=CURRENCY)
    payment_method = db.Column(db.String(20), nullable=False, default=PAYMENT_METHOD_MPESA)

    # only ever written together, see services.callback
    payment_status = db.Column(db.String(20), nullable=False, default=PAYMENT_PENDING, index=True)
    order_status = db.Column(db.String(20), nullable=False, default=ORDER_PENDING, index=True)

    # M-Pesa payment sub-record
    mpesa_checkout_request_id = db.Column(db.String(64), unique=True, index=True, nullable=True)
    mpesa_merchant_request_id = db.Column(db.String(64), nullable=True)
    mpesa_phone_number = db.Column(db.String(12), nullable=True)
    mpesa_initiated_at = db.Column(db.DateTime, nullable=True)
    mpesa_receipt_number = db.Column(db.String(32), nullable=True)
    mpesa_transaction_date = db.Column(db.DateTime, nullable=True)
    mpesa_paid_phone_number = db.Column(db.String(15), nullable=True)
    mpesa_amount = db.Column(db.Numeric(12, 2), nullable=True)
    mpesa_result_desc = db.Column(db.String(255), nullable=True)

    # our own receipt, generated on first request once paid
    receipt_number = db.Column(db.String(32), unique=True, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )

    @property
    def is_terminal(self) -> bool:
        return self.payment_status != PAYMENT_PENDING

    def to_public_dict(self) -> dict:
        """Customer-facing view. No gateway correlation ids."""
        gps = None
        if self.facility_latitude is not None and self.facility_longitude is not None:
            gps = {"latitude": self.facility_latitude, "longitude": self.facility_longitude}
        return {
            "id": self.id,
            "orderNumber": self.order_number,
            "primaryContact": {
                "name": self.primary_name,
                "email": self.primary_email,
                "phone": self.primary_phone,
                "jobTitle": self.primary_job_title,
            },
            "facility": {
                "name": self.facility_name,
                "type": self.facility_type,
                "address": self.facility_address,
                "city": self.facility_city,
                "county": self.facility_county,
                "postalCode": self.facility_postal_code,
                "GPS_coordinates": gps,
            },
            "alternativeContact": {
                "name": self.alt_name,
                "email": self.alt_email,
                "phone": self.alt_phone,
                "relationship": self.alt_relationship,
            },
            "items": [it.to_dict() for it in self.items],
            "totalAmount": float(self.total_amount),
            "currency": self.currency,
            "paymentMethod": self.payment_method,
            "paymentStatus": self.payment_status,
            "orderStatus": self.order_status,
            "mpesaReceiptNumber": self.mpesa_receipt_number,
            "receiptNumber": self.receipt_number,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def to_admin_dict(self) -> dict:
        out = self.to_public_dict()
        out["mpesaDetails"] = {
            "checkoutRequestID": self.mpesa_checkout_request_id,
            "merchantRequestID": self.mpesa_merchant_request_id,
            "phoneNumber": self.mpesa_phone_number,
            "paidPhoneNumber": self.mpesa_paid_phone_number,
            "mpesaReceiptNumber": self.mpesa_receipt_number,
            "transactionDate": self.mpesa_transaction_date.isoformat() if self.mpesa_transaction_date else None,
            "amount": float(self.mpesa_amount) if self.mpesa_amount is not None else None,
            "resultDesc": self.mpesa_result_desc,
            "initiatedAt": self.mpesa_initiated_at.isoformat() if self.mpesa_initiated_at else None,
        }
        return out

    def __repr__(self):
        return f"<Order {self.order_number} {self.payment_status}/{self.order_status}>"
