"""
HTTP tests for the order routes and the admin sync routes.

The app is driven without its lifespan: the database dependency is pointed
at the test engine and a sync engine is placed on app.state directly.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app.api.dependencies import hash_api_key
from app.core.config import settings
from app.core.exceptions import SalesforceConnectionError
from app.database.session import get_db
from app.models import Order, OrderStatus
from app.services.order_source import ExternalOrder, InMemoryOrderSource
from app.services.order_store import OrderStore
from app.services.sync_service import SyncService
from main import app

ADMIN_KEY = "test-admin-key"


class BrokenSource(InMemoryOrderSource):
    async def query_changed_since(self, since):
        raise SalesforceConnectionError("Salesforce request timed out")

    async def query_all(self):
        raise SalesforceConnectionError("Salesforce request timed out")


@pytest.fixture
def client(session_factory, sync_service, monkeypatch):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(settings, "ADMIN_API_KEY_HASH", hash_api_key(ADMIN_KEY))
    app.dependency_overrides[get_db] = override_get_db
    app.state.sync_service = sync_service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        del app.state.sync_service


@pytest.fixture
def admin_headers():
    return {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def orders(db, client_row):
    """Three orders for Sophie Martin, one per status."""
    rows = []
    for i, (order_status, amount) in enumerate([
        (OrderStatus.PREPARING, 100),
        (OrderStatus.SHIPPED, 200),
        (OrderStatus.DELIVERED, 300),
    ], start=1):
        order = Order(
            order_number=f"CMD-000{i}",
            client_id=client_row.id,
            amount=amount,
            status=order_status,
            created_by="API",
        )
        db.add(order)
        rows.append(order)
    db.commit()
    return rows


class TestOrderRoutes:
    """CRUD over /api/orders."""

    def test_list_orders(self, client, orders):
        response = client.get("/api/orders")

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"] == {"page": 1, "limit": 50, "total": 3, "total_pages": 1}
        assert {o["order_number"] for o in body["data"]} == {"CMD-0001", "CMD-0002", "CMD-0003"}
        assert body["data"][0]["client_name"] == "Sophie Martin"
        assert body["data"][0]["client_email"] == "sophie.martin@example.com"

    def test_list_filters_by_status_label(self, client, orders):
        """French labels are accepted as filters."""
        response = client.get("/api/orders", params={"status": "Livré"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert [o["order_number"] for o in data] == ["CMD-0003"]
        assert data[0]["status"] == "Delivered"

    def test_list_filters_by_client(self, client, orders, client_row):
        response = client.get("/api/orders", params={"client_id": client_row.id + 1})
        assert response.json()["pagination"]["total"] == 0

    def test_list_paginates(self, client, orders):
        response = client.get("/api/orders", params={"page": 2, "limit": 2})

        body = response.json()
        assert len(body["data"]) == 1
        assert body["pagination"]["total_pages"] == 2

    def test_list_rejects_unknown_status(self, client):
        response = client.get("/api/orders", params={"status": "Foo"})
        assert response.status_code == 400

    def test_stats(self, client, orders):
        response = client.get("/api/orders/stats")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        assert body["by_status"] == {"Preparing": 1, "Shipped": 1, "Delivered": 1, "Cancelled": 0}
        assert body["total_amount"] == 600.0
        assert body["average_amount"] == 200.0

    def test_stats_empty(self, client):
        body = client.get("/api/orders/stats").json()
        assert body["total"] == 0
        assert body["average_amount"] is None

    def test_get_order(self, client, orders):
        response = client.get(f"/api/orders/{orders[1].id}")

        assert response.status_code == 200
        body = response.json()
        assert body["order_number"] == "CMD-0002"
        assert body["amount"] == 200.0
        assert body["status"] == "Shipped"

    def test_get_missing_order(self, client):
        response = client.get("/api/orders/9999")
        assert response.status_code == 404
        assert response.json()["detail"] == "Order not found"

    def test_create_order(self, client, client_row):
        response = client.post("/api/orders", json={
            "order_number": "CMD-0100",
            "client_id": client_row.id,
            "amount": 99.5,
            "status": "Expédié",
            "description": "Created by hand",
        })

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "Shipped"
        assert body["amount"] == 99.5
        assert body["external_id"] is None
        assert body["client_name"] == "Sophie Martin"

    def test_create_defaults_to_preparing(self, client, client_row):
        response = client.post("/api/orders", json={
            "order_number": "CMD-0101",
            "client_id": client_row.id,
            "amount": 10,
        })
        assert response.json()["status"] == "Preparing"

    def test_create_duplicate_order_number(self, client, orders, client_row):
        response = client.post("/api/orders", json={
            "order_number": "CMD-0001",
            "client_id": client_row.id,
            "amount": 10,
        })
        assert response.status_code == 409

    def test_create_unknown_client(self, client):
        response = client.post("/api/orders", json={"order_number": "CMD-0102", "client_id": 42, "amount": 10})
        assert response.status_code == 400

    @pytest.mark.parametrize("payload", [
        {"order_number": "", "amount": 10},
        {"order_number": "CMD-" + "1" * 20, "amount": 10},
        {"order_number": "CMD-0103", "amount": 0},
        {"order_number": "CMD-0103", "amount": -5},
    ])
    def test_create_validation(self, client, client_row, payload):
        response = client.post("/api/orders", json={"client_id": client_row.id, **payload})
        assert response.status_code == 422
        assert "request_id" in response.json()

    def test_update_status(self, client, orders):
        response = client.put(f"/api/orders/{orders[0].id}/status", json={"status": "annulée"})

        assert response.status_code == 200
        assert response.json()["status"] == "Cancelled"

    def test_update_status_unknown(self, client, orders):
        response = client.put(f"/api/orders/{orders[0].id}/status", json={"status": "Lost"})
        assert response.status_code == 400

    def test_delete_order(self, client, orders):
        response = client.delete(f"/api/orders/{orders[0].id}")

        assert response.status_code == 204
        assert client.get(f"/api/orders/{orders[0].id}").status_code == 404


class TestAdminAuth:
    """X-API-Key guard on /api/admin."""

    def test_missing_key(self, client):
        response = client.post("/api/admin/sync")
        assert response.status_code == 401

    def test_wrong_key(self, client):
        response = client.get("/api/admin/sync/stats", headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    def test_key_not_configured(self, client, admin_headers, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_KEY_HASH", "")
        response = client.get("/api/admin/sync/stats", headers=admin_headers)
        assert response.status_code == 503


class TestAdminSyncRoutes:
    """Manual sync trigger, stats and source preview."""

    def test_trigger_sync(self, client, admin_headers, source, session_factory):
        now = datetime.now(timezone.utc)
        for i in range(1, 4):
            source.add_order(ExternalOrder(
                external_id=f"SF00{i}",
                order_number=f"CMD-000{i}",
                amount=50 * i,
                status="Livré",
                description=None,
                last_modified=now - timedelta(minutes=i),
            ))

        response = client.post("/api/admin/sync", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "succeeded"
        assert body["success"] is True
        assert body["inserted"] == 3
        assert body["attempts"] == 1

        session = session_factory()
        assert session.query(Order).filter(Order.status == OrderStatus.DELIVERED).count() == 3
        session.close()

    def test_trigger_sync_failure(self, client, admin_headers, session_factory, monkeypatch):
        monkeypatch.setattr(settings, "SYNC_MAX_ATTEMPTS", 1)
        app.state.sync_service = SyncService(BrokenSource(), OrderStore.factory(session_factory))

        response = client.post("/api/admin/sync", headers=admin_headers)

        assert response.status_code == 500
        detail = response.json()["detail"]
        assert detail["attempts"] == 1
        assert "timed out" in detail["error"]

    def test_sync_stats(self, client, admin_headers):
        client.post("/api/admin/sync", headers=admin_headers)

        response = client.get("/api/admin/sync/stats", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total_runs"] == 1
        assert body["successful_runs"] == 1
        assert body["is_running"] is False
        assert body["last_result"]["outcome"] == "succeeded"
        assert body["next_scheduled_run"] is None

    def test_source_preview(self, client, admin_headers):
        app.state.sync_service.source.orders.extend(InMemoryOrderSource.with_demo_orders(5, seed=1).orders)

        response = client.get("/api/admin/sync/source", params={"limit": 2}, headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 5
        assert len(body["orders"]) == 2
        assert body["orders"][0]["last_modified"] >= body["orders"][1]["last_modified"]

    def test_source_preview_unreachable(self, client, admin_headers, session_factory):
        app.state.sync_service = SyncService(BrokenSource(), OrderStore.factory(session_factory))

        response = client.get("/api/admin/sync/source", headers=admin_headers)

        assert response.status_code == 502

    def test_engine_not_started(self, client, admin_headers):
        app.state.sync_service = None

        response = client.post("/api/admin/sync", headers=admin_headers)

        assert response.status_code == 503


class TestHealth:
    def test_health(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "environment": "development", "sync_running": False}
        assert response.headers["X-Request-ID"] == "req-123"
