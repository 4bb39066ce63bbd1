"""
HTTP Tests for the Ledger API

Exercises the FastAPI routes and their error mapping with TestClient.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from fastapi import status
from fastapi.testclient import TestClient

from ledger.api import create_app, http_error
from ledger.catalog import InMemoryCatalog
from ledger.config import Settings
from ledger.errors import DuplicateReferenceError, StorageFailureError
from ledger.models import Order, OrderItem, PaymentMethod, ProductMarker
from ledger.storage import InMemoryStorage
from ledger.utils import HOUR_MS, now_epoch_ms

STORE_ID = "store-demo"
CUSTOMER_ID = "customer-demo"


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def client(storage):
    catalog = InMemoryCatalog()
    catalog.add_payment_method(PaymentMethod(
        id="pm-card", identifier="card", name="Card",
        fee_rate=Decimal("0.03"), fee_additional=Decimal("5"), clear_days=7,
    ))
    app = create_app(settings=Settings(backend="memory"), storage=storage, catalog=catalog)
    return TestClient(app)


def add_order(storage, total="1000", marker=None):
    now = now_epoch_ms()
    order = Order(
        id=str(uuid4()),
        store_id=STORE_ID,
        customer_id=CUSTOMER_ID,
        order_total=Decimal(total),
        payment_method_id="pm-card",
        items=[OrderItem(product_id="product-1", name="Item", unit_price=Decimal(total), marker=marker)],
        created_at=now,
        updated_at=now,
    )
    with storage.transaction() as uow:
        uow.add_order(order)
    return order


def top_up(client, points="100"):
    return client.post(f"/stores/{STORE_ID}/top-ups", json={"customer_id": CUSTOMER_ID, "credit_amount": points})


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "healthy"


class TestSettlementRoutes:
    """Tests for mark-paid and pay-with-balance."""

    def test_mark_paid(self, client, storage):
        order = add_order(storage)

        response = client.post(f"/orders/{order.id}/mark-paid")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["already_processed"] is False
        assert Decimal(body["ledger_entry"]["amount"]) == Decimal("955")
        assert body["order"]["is_paid"] is True

    def test_mark_paid_twice(self, client, storage):
        order = add_order(storage)

        client.post(f"/orders/{order.id}/mark-paid")
        response = client.post(f"/orders/{order.id}/mark-paid", json={"actor_id": "staff-1"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["already_processed"] is True

    def test_missing_order_404(self, client):
        response = client.post("/orders/missing/mark-paid")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_recharge_order_409(self, client, storage):
        order = add_order(storage, marker=ProductMarker.CREDIT_RECHARGE)

        response = client.post(f"/orders/{order.id}/mark-paid")

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_insufficient_balance_409(self, client, storage):
        top_up(client, "10")
        order = add_order(storage, total="1000")

        response = client.post(f"/orders/{order.id}/pay-with-balance", json={"stream": "CREDIT"})

        assert response.status_code == status.HTTP_409_CONFLICT


class TestTopUpRoutes:
    """Tests for top-ups and recharge orders."""

    def test_top_up_and_balance(self, client):
        response = top_up(client, "50")

        assert response.status_code == status.HTTP_201_CREATED
        assert Decimal(response.json()["total_credit"]) == Decimal("50")

        balance = client.get(f"/stores/{STORE_ID}/ledgers/CREDIT/balance", params={"account_key": CUSTOMER_ID})
        assert balance.status_code == status.HTTP_200_OK
        assert Decimal(balance.json()["balance"]) == Decimal("50")

    def test_top_up_validation_400(self, client):
        response = client.post(f"/stores/{STORE_ID}/top-ups", json={"customer_id": CUSTOMER_ID, "is_paid": True})

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_recharge_order_flow(self, client):
        created = client.post(
            f"/stores/{STORE_ID}/recharge-orders",
            json={"customer_id": CUSTOMER_ID, "cash_amount": "1000", "payment_method_id": "pm-card"},
        )
        assert created.status_code == status.HTTP_201_CREATED
        order_id = created.json()["id"]

        settled = client.post(f"/orders/{order_id}/settle-recharge")

        assert settled.status_code == status.HTTP_200_OK
        assert Decimal(settled.json()["customer_entry"]["amount"]) == Decimal("100")


class TestReservationRoutes:
    """Tests for prepaid holds, cancellation and refunds."""

    def hold(self, client):
        return client.post(
            f"/stores/{STORE_ID}/reservations/prepaid-hold",
            json={
                "customer_id": CUSTOMER_ID,
                "reservation_id": "rsvp-1",
                "total_cost": "2000",
                "prepaid_percentage": "20",
            },
        )

    def test_hold_then_cancel(self, client):
        top_up(client, "100")
        hold = self.hold(client)
        assert hold.status_code == status.HTTP_200_OK
        assert hold.json()["status"] == 40

        now = now_epoch_ms()
        cancelled = client.post(
            f"/stores/{STORE_ID}/reservations/cancel",
            json={"order_id": hold.json()["order_id"], "reservation_time": now + 48 * HOUR_MS, "cancelled_at": now},
        )

        assert cancelled.status_code == status.HTTP_200_OK
        assert cancelled.json()["refunded"] is True
        assert Decimal(cancelled.json()["refund_amount"]) == Decimal("40")

    def test_refund_twice(self, client):
        top_up(client, "100")
        order_id = self.hold(client).json()["order_id"]

        first = client.post(f"/orders/{order_id}/refund", json={"reason": "rain"})
        second = client.post(f"/orders/{order_id}/refund")

        assert first.json()["refunded"] is True
        assert second.json()["refunded"] is False


class TestLedgerRoutes:
    """Tests for history and reconciliation reads."""

    def test_history_and_reconcile(self, client):
        top_up(client, "10")
        top_up(client, "20")
        params = {"account_key": CUSTOMER_ID}

        history = client.get(f"/stores/{STORE_ID}/ledgers/CREDIT/history", params=params)
        report = client.get(f"/stores/{STORE_ID}/ledgers/CREDIT/reconcile", params=params)

        assert history.json()["total_count"] == 2
        assert Decimal(history.json()["entries"][0]["amount"]) == Decimal("20")
        assert report.json()["consistent"] is True

    def test_store_history_has_fee_fields(self, client, storage):
        order = add_order(storage)
        client.post(f"/orders/{order.id}/mark-paid")

        history = client.get(f"/stores/{STORE_ID}/ledgers/STORE/history")

        entry = history.json()["entries"][0]
        assert entry["order_id"] == order.id
        assert Decimal(entry["platform_fee"]) == Decimal("-10")

    def test_unknown_stream_422(self, client):
        response = client.get(f"/stores/{STORE_ID}/ledgers/BITCOIN/balance")

        assert response.status_code == 422


class TestErrorMapping:
    def test_storage_failure_503(self):
        assert http_error(StorageFailureError("down")).status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    def test_duplicate_409(self):
        assert http_error(DuplicateReferenceError("dup")).status_code == status.HTTP_409_CONFLICT


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
