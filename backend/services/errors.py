# backend/services/errors.py
from __future__ import annotations


class CheckoutError(Exception):
    """Base for order / payment flow errors that map onto an HTTP status."""
    status_code = 500


class ValidationError(CheckoutError):
    status_code = 400

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class DuplicateOrderNumber(CheckoutError):
    status_code = 409

    def __init__(self, order_number: str):
        super().__init__(f"Order number {order_number} already exists")
        self.order_number = order_number


class NotFound(CheckoutError):
    status_code = 404


class ReceiptUnavailable(CheckoutError):
    status_code = 400
