"""
Pytest fixtures for the checkout backend.

Every test gets a fresh app on in-memory SQLite, mail sending suppressed and
recorded, and a scripted stand-in for the Safaricom HTTP endpoints injected
as the M-Pesa client's opener.
"""
import io
import json
import urllib.error
from urllib.parse import urlsplit

import pytest

from backend.app import create_app
from backend.extensions import db, mail
from backend.models import User
from backend.api.utils.mpesa import STK_PUSH_PATH, STK_QUERY_PATH


class FakeResponse:
    def __init__(self, status, raw):
        self.status = status
        self._raw = raw

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class TruncatedResponse(FakeResponse):
    """Connection opened fine, the body read fails."""

    def __init__(self, error):
        super().__init__(200, b"")
        self._error = error

    def read(self):
        raise self._error


class FakeGateway:
    """
    Callable with the ``urllib.request.urlopen`` signature. Each endpoint has
    a queue of scripted answers: ``(status, body)`` tuples, exceptions to
    raise, or ready-made response objects. An empty queue falls back to a successful answer.
    """

    def __init__(self):
        self.requests = []
        self.token = []
        self.push = []
        self.query = []
        self._pushes = 0

    def calls(self, path):
        return [r for r in self.requests if r["path"] == path]

    def _default(self, path):
        if path.startswith("/oauth"):
            return 200, {"access_token": "test-token", "expires_in": "3599"}
        if path == STK_PUSH_PATH:
            self._pushes += 1
            return 200, {
                "MerchantRequestID": f"29115-{self._pushes:05d}-1",
                "CheckoutRequestID": f"ws_CO_TEST{self._pushes:06d}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            }
        return 200, {
            "ResponseCode": "0",
            "ResponseDescription": "The service request has been accepted successsfully",
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        }

    def __call__(self, req, timeout=None):
        path = urlsplit(req.full_url).path
        self.requests.append({
            "path": path,
            "url": req.full_url,
            "method": req.get_method(),
            "authorization": req.get_header("Authorization"),
            "json": json.loads(req.data.decode("utf-8")) if req.data else None,
            "timeout": timeout,
        })

        if path.startswith("/oauth"):
            queue = self.token
        elif path == STK_PUSH_PATH:
            queue = self.push
        elif path == STK_QUERY_PATH:
            queue = self.query
        else:
            raise AssertionError(f"unexpected gateway path {path}")

        answer = queue.pop(0) if queue else self._default(path)
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, FakeResponse):
            return answer

        status, body = answer
        raw = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
        if status >= 400:
            raise urllib.error.HTTPError(req.full_url, status, "error", {}, io.BytesIO(raw))
        return FakeResponse(status, raw)


def unreachable():
    return urllib.error.URLError("connection refused")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(gateway):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "MAIL_SERVER": "localhost",
            "MAIL_SUPPRESS_SEND": True,
            "MAIL_DEFAULT_SENDER": "orders@accordmedical.co.ke",
            "ORDER_NOTIFICATION_EMAILS": ["ops@accordmedical.co.ke"],
            "MPESA_ENVIRONMENT": "sandbox",
            "MPESA_BASE_URL": None,
            "MPESA_CONSUMER_KEY": "ck",
            "MPESA_CONSUMER_SECRET": "cs",
            "MPESA_BUSINESS_SHORT_CODE": "174379",
            "MPESA_PASSKEY": "passkey",
            "MPESA_CALLBACK_URL": "https://example.com/api/orders/mpesa/callback",
        },
        mpesa_opener=gateway,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def outbox(app):
    with mail.record_messages() as sent:
        yield sent


@pytest.fixture
def mpesa(app):
    return app.extensions["mpesa"]


def order_payload(**overrides):
    data = {
        "primaryContact": {
            "name": "Jane Wanjiku",
            "email": "Jane.Wanjiku@Example.com",
            "phone": "254712345678",
            "jobTitle": "Procurement Officer",
        },
        "facility": {
            "name": "Kilimani Medical Centre",
            "type": "Medical Center",
            "address": "Argwings Kodhek Road, Kilimani",
            "city": "Nairobi",
            "county": "Nairobi",
            "postalCode": "00100",
            "GPS_coordinates": {"latitude": -1.2921, "longitude": 36.7833},
        },
        "alternativeContact": {
            "name": "Peter Otieno",
            "email": "peter.otieno@example.com",
            "phone": "254798765432",
            "relationship": "Head Nurse",
        },
        "items": [
            {"consumableId": "GLV-100", "name": "Nitrile Examination Gloves", "quantity": 2, "price": 1500},
            {"consumableId": "SYR-005", "name": "Syringe 5ml", "quantity": 10, "price": 25},
        ],
        "totalAmount": 3250,
        "paymentMethod": "mpesa",
    }
    data.update(overrides)
    return data


def stk_callback(checkout_id, result_code=0, result_desc=None, metadata=None):
    stk = {
        "MerchantRequestID": "29115-00001-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or (
            "The service request is processed successfully." if result_code == 0
            else "Request cancelled by user"
        ),
    }
    if metadata is not None:
        stk["CallbackMetadata"] = {"Item": metadata}
    return {"Body": {"stkCallback": stk}}


def paid_metadata(amount=3250, receipt="NLJ7RT61SV", phone=254712345678, date=20261018103045):
    return [
        {"Name": "Amount", "Value": amount},
        {"Name": "MpesaReceiptNumber", "Value": receipt},
        {"Name": "Balance"},
        {"Name": "TransactionDate", "Value": date},
        {"Name": "PhoneNumber", "Value": phone},
    ]


@pytest.fixture
def make_user(app):
    def _make(username="manager", password="Secret123!", role="manager"):
        u = User(username=username, email=f"{username}@accordmedical.co.ke", role=role)
        u.set_password(password)
        db.session.add(u)
        db.session.commit()
        return u
    return _make
