"""External order source interface, record type, and the in-process source.

The in-process source stands in for Salesforce in ``mock`` mode and in tests.
"""

import abc
import logging
import random
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_OFFSET_WITHOUT_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a Salesforce datetime (``2024-05-01T10:00:00.000+0000``) to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace("Z", "+00:00")
        text = _OFFSET_WITHOUT_COLON.sub(r"\1:\2", text)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class ExternalOrder:
    """One order as read from the external source.

    Values are kept as received; the sync engine validates them per record.
    """
    external_id: Optional[str]
    order_number: Optional[str]
    amount: Any
    status: Optional[str]
    description: Optional[str]
    last_modified: Optional[datetime]
    owner_email: Optional[str] = None

    @classmethod
    def from_salesforce(cls, record: Dict[str, Any]) -> "ExternalOrder":
        return cls(
            external_id=record.get("Id"),
            order_number=record.get("NumCommande__c"),
            amount=record.get("Montant__c"),
            status=record.get("Etat__c"),
            description=record.get("Descriptions__c"),
            last_modified=parse_timestamp(record.get("LastModifiedDate")),
            owner_email=record.get("ClientEmail__c"),
        )


class OrderSource(abc.ABC):
    """Read-only view of the external order system."""

    @abc.abstractmethod
    async def query_changed_since(self, since: datetime) -> List[ExternalOrder]:
        """Orders whose last-modified time is strictly after ``since``, oldest first."""

    @abc.abstractmethod
    async def query_all(self) -> List[ExternalOrder]:
        """Full snapshot, newest first. Diagnostics only."""

    async def close(self) -> None:
        return None


class InMemoryOrderSource(OrderSource):
    """Order source backed by a list held in memory."""

    DEMO_STATUSES = ["En préparation", "Expédié", "Livré", "Annulé"]
    DEMO_CLIENTS = [
        "Entreprise TechCorp",
        "Sophie Martin",
        "Jean Dupont",
        "Marie Laurent",
        "Pierre Durand",
    ]

    def __init__(self, orders: Optional[List[ExternalOrder]] = None, limit: int = 2000):
        self.orders: List[ExternalOrder] = list(orders or [])
        self.limit = limit

    @classmethod
    def with_demo_orders(cls, count: int = 30, seed: Optional[int] = None) -> "InMemoryOrderSource":
        """Build a source holding ``count`` plausible orders from the last 30 days."""
        rng = random.Random(seed)
        now = datetime.now(timezone.utc)
        orders = []
        for i in range(1, count + 1):
            status = rng.choice(cls.DEMO_STATUSES)
            client = rng.choice(cls.DEMO_CLIENTS)
            created = now - timedelta(days=rng.randint(0, 29))
            modified = min(created + timedelta(hours=rng.randint(0, 47)), now)
            orders.append(ExternalOrder(
                external_id=f"SF{i:015d}AAA",
                order_number=f"CMD-{i:04d}",
                amount=round(rng.uniform(100, 2100), 2),
                status=status,
                description=f"Order for {client} - {status}",
                last_modified=modified,
            ))
        logger.info("In-memory order source seeded with %d demo orders", count)
        return cls(orders)

    async def query_changed_since(self, since: datetime) -> List[ExternalOrder]:
        since = parse_timestamp(since)
        changed = [
            o for o in self.orders
            if o.last_modified is not None and o.last_modified > since
        ]
        changed.sort(key=lambda o: o.last_modified)
        return changed[: self.limit]

    async def query_all(self) -> List[ExternalOrder]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(self.orders, key=lambda o: o.last_modified or epoch, reverse=True)[: self.limit]

    def add_order(self, order: ExternalOrder) -> ExternalOrder:
        if order.last_modified is None:
            order = replace(order, last_modified=datetime.now(timezone.utc))
        self.orders.append(order)
        return order

    def update_order(self, external_id: str, **changes) -> ExternalOrder:
        """Apply ``changes`` to a held order and bump its last-modified time."""
        for index, order in enumerate(self.orders):
            if order.external_id == external_id:
                changes.setdefault("last_modified", datetime.now(timezone.utc))
                self.orders[index] = replace(order, **changes)
                return self.orders[index]
        raise KeyError(external_id)
