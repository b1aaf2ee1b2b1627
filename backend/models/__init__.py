# backend/models/__init__.py
from .user import User
from .order import Order
from .order_item import OrderItem
from .notification import NotificationOutbox

__all__ = [
    "User",
    "Order",
    "OrderItem",
    "NotificationOutbox",
]
