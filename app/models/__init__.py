"""SQLAlchemy models for the order portal."""

from .client import Client
from .order import Order, OrderStatus

__all__ = [
    "Client",
    "Order",
    "OrderStatus",
]
