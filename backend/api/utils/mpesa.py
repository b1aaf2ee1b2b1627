# backend/api/utils/mpesa.py
"""
Safaricom Daraja client for Lipa Na M-Pesa Online (STK push).

One instance per app (see ``init_mpesa`` in extensions). The client holds no
state between calls: every operation fetches a fresh OAuth token and derives
a fresh timestamped password.
"""
from __future__ import annotations

import base64
import json
import logging
import http.client
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

log = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_URL = "https://api.safaricom.co.ke"

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Daraja field limits
ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13


class MpesaError(Exception):
    """Base for gateway failures."""


class AuthFailure(MpesaError):
    """Credential exchange did not yield a token."""


class GatewayRejected(MpesaError):
    """Gateway understood the request and declined it."""

    def __init__(self, message: str, payload: dict | None = None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {}


class GatewayUnreachable(MpesaError):
    """Network error or timeout talking to the gateway."""


@dataclass(frozen=True)
class MpesaConfig:
    base_url: str
    consumer_key: str
    consumer_secret: str
    short_code: str
    passkey: str
    callback_url: str
    token_timeout: float = 10.0
    request_timeout: float = 30.0

    @classmethod
    def from_mapping(cls, cfg) -> "MpesaConfig":
        env = (cfg.get("MPESA_ENVIRONMENT") or "sandbox").strip().lower()
        base_url = cfg.get("MPESA_BASE_URL") or (
            PRODUCTION_URL if env == "production" else SANDBOX_URL
        )
        return cls(
            base_url=base_url.rstrip("/"),
            consumer_key=(cfg.get("MPESA_CONSUMER_KEY") or "").strip(),
            consumer_secret=(cfg.get("MPESA_CONSUMER_SECRET") or "").strip(),
            short_code=(cfg.get("MPESA_BUSINESS_SHORT_CODE") or "").strip(),
            passkey=(cfg.get("MPESA_PASSKEY") or "").strip(),
            callback_url=(cfg.get("MPESA_CALLBACK_URL") or "").strip(),
            token_timeout=float(cfg.get("MPESA_TOKEN_TIMEOUT") or 10),
            request_timeout=float(cfg.get("MPESA_REQUEST_TIMEOUT") or 30),
        )


@dataclass(frozen=True)
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: str
    response_description: str | None = None


def build_password(short_code: str, passkey: str, when: datetime) -> tuple[str, str]:
    """Return ``(password, timestamp)``; the timestamp is embedded, so never reuse it."""
    timestamp = when.strftime("%Y%m%d%H%M%S")
    raw = f"{short_code}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii"), timestamp


def round_amount(amount) -> int:
    """M-Pesa only takes whole shillings."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class MpesaClient:
    def __init__(self, config: MpesaConfig, opener=None, clock=None):
        self.config = config
        self._open = opener or urllib.request.urlopen
        self._clock = clock or datetime.utcnow

    # --- transport ---------------------------------------------------------

    def _call(self, path: str, *, headers: dict, payload: dict | None, timeout: float):
        """
        Perform one HTTP exchange. Returns ``(status, body)`` where body is the
        decoded JSON object or None. Transport problems raise GatewayUnreachable;
        HTTP error statuses are returned, not raised.
        """
        url = f"{self.config.base_url}{path}"
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json", **headers},
            method="POST" if payload is not None else "GET",
        )
        try:
            with self._open(req, timeout=timeout) as resp:
                status = getattr(resp, "status", 200)
                raw = resp.read()
        except urllib.error.HTTPError as e:
            status = e.code
            try:
                raw = e.read() or b""
            except (http.client.HTTPException, OSError):
                raw = b""
        # URLError, timeouts, TLS errors and truncated reads all land here
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            log.error("M-Pesa transport error on %s: %s", path, e)
            raise GatewayUnreachable(f"M-Pesa unreachable: {e}") from e

        try:
            body = json.loads(raw.decode("utf-8")) if raw else None
        except (UnicodeDecodeError, ValueError):
            body = None
        if body is not None and not isinstance(body, dict):
            body = None
        return status, body

    # --- operations --------------------------------------------------------

    def acquire_access_token(self) -> str:
        creds = f"{self.config.consumer_key}:{self.config.consumer_secret}".encode("utf-8")
        auth = base64.b64encode(creds).decode("ascii")
        status, body = self._call(
            TOKEN_PATH,
            headers={"Authorization": f"Basic {auth}"},
            payload=None,
            timeout=self.config.token_timeout,
        )
        token = (body or {}).get("access_token")
        if status >= 400 or not token:
            detail = (body or {}).get("errorMessage") or f"HTTP {status}"
            log.error("M-Pesa token exchange failed: %s", detail)
            raise AuthFailure(f"Failed to generate M-Pesa access token: {detail}")
        log.info("M-Pesa access token generated")
        return token

    def _password(self) -> tuple[str, str]:
        password, timestamp = build_password(
            self.config.short_code, self.config.passkey, self._clock()
        )
        log.debug("M-Pesa password for %s at %s: %s...", self.config.short_code, timestamp, password[:12])
        return password, timestamp

    def initiate_push(self, phone_number: str, amount, order_reference: str, description: str) -> StkPushResult:
        """
        Send an STK push. Not retried: a second push would prompt the customer twice.
        """
        token = self.acquire_access_token()
        password, timestamp = self._password()
        payload = {
            "BusinessShortCode": self.config.short_code,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": round_amount(amount),
            "PartyA": phone_number,
            "PartyB": self.config.short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.config.callback_url,
            "AccountReference": (order_reference or "")[:ACCOUNT_REFERENCE_MAX],
            "TransactionDesc": (description or "")[:TRANSACTION_DESC_MAX],
        }
        log.info(
            "STK push -> phone=%s amount=%s ref=%s",
            phone_number, payload["Amount"], payload["AccountReference"],
        )
        status, body = self._call(
            STK_PUSH_PATH,
            headers={"Authorization": f"Bearer {token}"},
            payload=payload,
            timeout=self.config.request_timeout,
        )
        body = body or {}
        if str(body.get("ResponseCode")) == "0" and body.get("CheckoutRequestID"):
            log.info("STK push accepted: %s", body.get("CheckoutRequestID"))
            return StkPushResult(
                checkout_request_id=body["CheckoutRequestID"],
                merchant_request_id=body.get("MerchantRequestID") or "",
                response_description=body.get("ResponseDescription"),
            )

        message = body.get("errorMessage") or body.get("ResponseDescription") or f"HTTP {status}"
        log.error("STK push rejected: %s", message)
        raise GatewayRejected(message, body)

    def query_status(self, checkout_request_id: str, retries: int = 1) -> dict:
        """
        Raw STK query result. The caller interprets it; an HTTP error with a JSON
        body (e.g. "transaction is being processed") is still a gateway answer.
        Safe to repeat, so transport failures are retried ``retries`` times.
        """
        attempt = 0
        while True:
            try:
                return self._query_once(checkout_request_id)
            except GatewayUnreachable:
                if attempt >= retries:
                    raise
                attempt += 1
                log.warning("STK query for %s unreachable, retry %d/%d", checkout_request_id, attempt, retries)

    def _query_once(self, checkout_request_id: str) -> dict:
        token = self.acquire_access_token()
        password, timestamp = self._password()
        payload = {
            "BusinessShortCode": self.config.short_code,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        status, body = self._call(
            STK_QUERY_PATH,
            headers={"Authorization": f"Bearer {token}"},
            payload=payload,
            timeout=self.config.request_timeout,
        )
        if body is None:
            raise GatewayUnreachable(f"M-Pesa status query returned no usable body (HTTP {status})")
        log.info("STK query %s -> ResponseCode=%s ResultCode=%s",
                 checkout_request_id, body.get("ResponseCode"), body.get("ResultCode"))
        return body
