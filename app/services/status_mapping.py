"""Mapping from external status labels to the local order status enum.

Salesforce records (and older clients of the API) use French labels, with
or without accents. Lookups are case-insensitive and accent-insensitive.
"""

import unicodedata
from typing import Optional

from app.core.exceptions import UnknownStatusError
from app.models.order import OrderStatus

STATUS_TABLE = {
    # French
    "en preparation": OrderStatus.PREPARING,
    "expedie": OrderStatus.SHIPPED,
    "expediee": OrderStatus.SHIPPED,
    "livre": OrderStatus.DELIVERED,
    "livree": OrderStatus.DELIVERED,
    "annule": OrderStatus.CANCELLED,
    "annulee": OrderStatus.CANCELLED,
    # English
    "preparing": OrderStatus.PREPARING,
    "shipped": OrderStatus.SHIPPED,
    "delivered": OrderStatus.DELIVERED,
    "cancelled": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
}

DEFAULT_STATUS = OrderStatus.PREPARING


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


def normalize_status(value: Optional[str]) -> OrderStatus:
    """Return the canonical status for an external label.

    Missing or blank labels fall back to Preparing. Unknown labels raise
    UnknownStatusError.
    """
    if value is None:
        return DEFAULT_STATUS
    if isinstance(value, OrderStatus):
        return value
    if not isinstance(value, str):
        raise UnknownStatusError(value)
    if not value.strip():
        return DEFAULT_STATUS

    status = STATUS_TABLE.get(_fold(value))
    if status is None:
        raise UnknownStatusError(value)
    return status
