"""
Pytest configuration and shared fixtures.
"""
import os

# Must be set before anything under app/ is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SALESFORCE_MODE"] = "mock"
os.environ["SYNC_SCHEDULE_ENABLED"] = "false"

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database.base import Base
from app.models import Client, Order, OrderStatus
from app.services.order_source import ExternalOrder, InMemoryOrderSource
from app.services.order_store import OrderStore
from app.services.sync_service import SyncService


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def source() -> InMemoryOrderSource:
    return InMemoryOrderSource()


@pytest.fixture
def sync_service(source, session_factory) -> SyncService:
    return SyncService(source, OrderStore.factory(session_factory), max_run_seconds=30)


@pytest.fixture
def make_external_order():
    """Factory for ExternalOrder records modified an hour ago by default."""
    def _make(
        external_id: str,
        order_number: Optional[str] = None,
        status: Optional[str] = "En préparation",
        amount: Any = 150.0,
        description: Optional[str] = None,
        modified: Optional[datetime] = None,
        owner_email: Optional[str] = None,
    ) -> ExternalOrder:
        return ExternalOrder(
            external_id=external_id,
            order_number=order_number or f"CMD-{external_id}",
            amount=amount,
            status=status,
            description=description,
            last_modified=modified or datetime.now(timezone.utc) - timedelta(hours=1),
            owner_email=owner_email,
        )
    return _make


@pytest.fixture
def client_row(db) -> Client:
    client = Client(name="Sophie Martin", email="sophie.martin@example.com")
    db.add(client)
    db.commit()
    db.refresh(client)
    return client


@pytest.fixture
def seeded_order(db, client_row) -> Order:
    """Previously synced order SF001, still Preparing."""
    order = Order(
        external_id="SF001",
        order_number="CMD-0001",
        client_id=client_row.id,
        amount=Decimal("120.00"),
        status=OrderStatus.PREPARING,
        description="First order",
        last_synced_at=datetime.now(timezone.utc) - timedelta(days=2),
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def salesforce_record(**overrides) -> Dict[str, Any]:
    record = {
        "attributes": {"type": "Commande__c"},
        "Id": "a01000000000001AAA",
        "NumCommande__c": "CMD-0001",
        "Montant__c": 250.5,
        "Etat__c": "Expédié",
        "Descriptions__c": "Commande Jean Dupont",
        "CreatedDate": "2024-05-01T09:00:00.000+0000",
        "LastModifiedDate": "2024-05-02T10:30:00.000+0000",
    }
    record.update(overrides)
    return record


@pytest.fixture
def sample_records() -> List[Dict[str, Any]]:
    """Three Salesforce order records as returned by the query API."""
    return [
        salesforce_record(),
        salesforce_record(Id="a01000000000002AAA", NumCommande__c="CMD-0002", Etat__c="Livré"),
        salesforce_record(Id="a01000000000003AAA", NumCommande__c="CMD-0003", Etat__c="En préparation"),
    ]
