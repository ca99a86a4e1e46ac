"""
API integration tests
End-to-end flows through the HTTP layer
"""

from datetime import timedelta
from decimal import Decimal
from fastapi.testclient import TestClient

from pms_inventory.core.precision import utcnow

API = "/api/v1"


def dec(value) -> Decimal:
    """JSON numbers and strings back to Decimal for exact comparison"""
    return Decimal(str(value))


class TestSystemEndpoints:

    def test_info(self, client: TestClient):
        response = client.get("/info")
        assert response.status_code == 200
        data = response.json()
        assert data["api_version"] == "v1"
        assert data["precision"]["cost_decimal_places"] == 4


class TestBatchFlow:
    """Receive, consume and inspect batches over HTTP"""

    def test_create_and_consume_fefo(self, client: TestClient, milk, main_store):
        for number, days, cost in (("B1", 10, "5"), ("B2", 3, "6")):
            response = client.post(f"{API}/stock/batches", json={
                "stock_item_id": milk.id,
                "warehouse_id": main_store.id,
                "batch_number": number,
                "quantity": "100" if number == "B1" else "50",
                "unit_cost": cost,
                "expiration_date": (utcnow() + timedelta(days=days)).isoformat(),
            }, headers={"X-Actor-Id": "receiver"})
            assert response.status_code == 201, response.text

        response = client.post(f"{API}/stock/batches/consume", json={
            "stock_item_id": milk.id,
            "warehouse_id": main_store.id,
            "quantity": "60",
        })
        assert response.status_code == 200, response.text
        data = response.json()
        assert dec(data["total_cost"]) == Decimal("350")
        assert [a["batch_number"] for a in data["allocations"]] == ["B2", "B1"]

        response = client.get(f"{API}/stock/warehouses/{main_store.id}/stock/{milk.id}")
        assert response.status_code == 200
        level = response.json()
        assert dec(level["quantity"]) == Decimal("90")
        assert dec(level["average_cost"]) == Decimal("5.3333")

        response = client.get(f"{API}/stock/batches", params={"stock_item_id": milk.id})
        assert response.status_code == 200
        batches = response.json()
        assert [b["batch_number"] for b in batches] == ["B1"]
        assert dec(batches[0]["quantity"]) == Decimal("90")

    def test_expired_batches_until_swept(self, client: TestClient, stock, milk, main_store):
        stock.receive_batch(milk, main_store, "OLD", 5, 1, expires_in_days=-2)
        stock.receive_batch(milk, main_store, "NEW", 5, 1, expires_in_days=5)

        response = client.get(f"{API}/stock/batches/expired", params={"warehouse_id": main_store.id})
        assert [b["batch_number"] for b in response.json()] == ["OLD"]

        response = client.post(f"{API}/stock/batches/mark-expired", params={"warehouse_id": main_store.id})
        assert response.json()["count"] == 1
        assert client.get(f"{API}/stock/batches/expired").json() == []

    def test_batch_listing_needs_a_filter(self, client: TestClient):
        response = client.get(f"{API}/stock/batches")
        assert response.status_code == 400

    def test_movement_lookup_and_replay(self, client: TestClient, stock, flour, main_store):
        stock.receive_ledger_only(flour, main_store, 10, 2)

        response = client.post(f"{API}/stock/movements/consume", json={
            "stock_item_id": flour.id,
            "warehouse_id": main_store.id,
            "quantity": "4",
        }, headers={"X-Actor-Id": "cook"})
        assert response.status_code == 200, response.text
        movement_id = response.json()["movements"][0]["id"]

        response = client.get(f"{API}/stock/movements/{movement_id}")
        assert response.status_code == 200
        movement = response.json()
        assert movement["type"] == "CONSUMPTION"
        assert movement["created_by"] == "cook"
        assert dec(movement["total_cost"]) == Decimal("8")

        response = client.get(f"{API}/stock/movements", params={"movement_type": "CONSUMPTION"})
        assert response.json()["total"] == 1

        response = client.get(f"{API}/stock/warehouses/{main_store.id}/stock/{flour.id}/replay")
        assert response.json()["matches_ledger"] is True


class TestErrorMapping:
    """Service error codes become HTTP statuses"""

    def test_insufficient_stock_is_400(self, client: TestClient, stock, flour, main_store):
        stock.receive_ledger_only(flour, main_store, 2, 1)

        response = client.post(f"{API}/stock/movements/consume", json={
            "stock_item_id": flour.id,
            "warehouse_id": main_store.id,
            "quantity": "5",
        })

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "INSUFFICIENT_STOCK"
        assert dec(detail["details"]["requested"]) == Decimal("5")

    def test_unknown_item_is_404(self, client: TestClient, main_store):
        response = client.post(f"{API}/stock/movements/consume", json={
            "stock_item_id": 999,
            "warehouse_id": main_store.id,
            "quantity": "1",
        })

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    def test_invalid_state_is_409(self, client: TestClient, stock, milk, main_store):
        batch = stock.receive_batch(milk, main_store, "B1", 5, 1, expires_in_days=3)

        assert client.post(f"{API}/stock/batches/{batch.id}/expire").status_code == 200
        response = client.post(f"{API}/stock/batches/{batch.id}/expire")

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVALID_STATE"

    def test_duplicate_batch_is_409(self, client: TestClient, stock, milk, main_store):
        stock.receive_batch(milk, main_store, "B1", 5, 1)

        response = client.post(f"{API}/stock/batches", json={
            "stock_item_id": milk.id,
            "warehouse_id": main_store.id,
            "batch_number": "B1",
            "quantity": "1",
            "unit_cost": "1",
        })

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "CONSTRAINT_VIOLATION"

    def test_request_validation_is_422(self, client: TestClient, milk, main_store):
        response = client.post(f"{API}/stock/movements/adjustment", json={
            "stock_item_id": milk.id,
            "warehouse_id": main_store.id,
            "new_quantity": "3",
            "reason": "   ",
        })
        assert response.status_code == 422

    def test_transfer_between_properties_is_400(self, client: TestClient, stock, flour, main_store, resort_store):
        stock.receive_ledger_only(flour, main_store, 5, 1)

        response = client.post(f"{API}/stock/transfers", json={
            "stock_item_id": flour.id,
            "source_warehouse_id": main_store.id,
            "destination_warehouse_id": resort_store.id,
            "quantity": "1",
        })

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


class TestPurchaseOrderFlow:
    """Order, approve, send and receive over HTTP"""

    def test_order_to_receipt(self, client: TestClient, stock, supplier, main_store, flour):
        headers = {"X-Actor-Id": "buyer"}
        response = client.post(f"{API}/purchase-orders", json={
            "supplier_id": supplier.id,
            "warehouse_id": main_store.id,
            "items": [{"stock_item_id": flour.id, "quantity": "10", "unit_cost": "2.5"}],
        }, headers=headers)
        assert response.status_code == 201, response.text
        po = response.json()
        assert po["status"] == "DRAFT"
        assert po["po_number"].startswith("PO-")
        line_id = po["items"][0]["id"]

        response = client.post(f"{API}/purchase-orders/{po['id']}/receive", json={
            "items": [{"po_item_id": line_id, "quantity": "1"}],
        })
        assert response.status_code == 409

        for action in ("submit", "approve", "send"):
            response = client.post(f"{API}/purchase-orders/{po['id']}/{action}", headers=headers)
            assert response.status_code == 200, response.text
        assert response.json()["status"] == "SENT"

        expiry = (utcnow() + timedelta(days=30)).isoformat()
        response = client.post(f"{API}/purchase-orders/{po['id']}/receive", json={
            "items": [{"po_item_id": line_id, "quantity": "10", "batch_number": "FL-1",
                       "expiration_date": expiry}],
        }, headers=headers)
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "RECEIVED"

        level = stock.level(flour, main_store)
        assert level.quantity == Decimal("10")
        assert level.average_cost == Decimal("2.5")

        response = client.get(f"{API}/purchase-orders", params={"status": "RECEIVED"})
        assert response.json()["total"] == 1

        response = client.get(f"{API}/purchase-orders/{po['id']}/receipts")
        assert response.json()[0]["items"][0]["batch_number"] == "FL-1"

    def test_reject_requires_reason(self, client: TestClient, supplier, main_store, flour):
        po = client.post(f"{API}/purchase-orders", json={
            "supplier_id": supplier.id,
            "warehouse_id": main_store.id,
            "items": [{"stock_item_id": flour.id, "quantity": "1", "unit_cost": "1"}],
        }).json()
        client.post(f"{API}/purchase-orders/{po['id']}/submit")

        response = client.post(f"{API}/purchase-orders/{po['id']}/reject", json={})
        assert response.status_code == 400

        response = client.post(f"{API}/purchase-orders/{po['id']}/reject", json={"reason": "Wrong supplier"})
        assert response.status_code == 200
        assert response.json()["status"] == "DRAFT"


class TestCycleCountFlow:
    """Count a warehouse over HTTP and book the variance"""

    def test_count_to_adjustment(self, client: TestClient, stock, flour, main_store):
        stock.receive_ledger_only(flour, main_store, 20, 2)
        headers = {"X-Actor-Id": "auditor"}

        response = client.post(f"{API}/stock/cycle-counts", json={
            "warehouse_id": main_store.id, "type": "FULL", "blind_count": True,
        }, headers=headers)
        assert response.status_code == 201
        count = response.json()

        assert client.post(f"{API}/stock/cycle-counts/{count['id']}/populate").status_code == 200
        started = client.post(f"{API}/stock/cycle-counts/{count['id']}/start").json()
        line = started["items"][0]
        assert line["system_quantity"] is None

        response = client.put(f"{API}/stock/cycle-counts/items/{line['id']}", json={"counted_quantity": "18"})
        assert response.status_code == 200

        response = client.post(f"{API}/stock/cycle-counts/{count['id']}/submit")
        assert response.status_code == 200
        assert dec(response.json()["total_variance_cost"]) == Decimal("4")

        response = client.post(f"{API}/stock/cycle-counts/{count['id']}/approve", headers=headers)
        assert response.status_code == 200
        assert response.json()["approved_by"] == "auditor"
        assert stock.level(flour, main_store).quantity == Decimal("18")

        response = client.post(f"{API}/stock/cycle-counts/{count['id']}/approve")
        assert response.status_code == 409

    def test_unknown_count_is_404(self, client: TestClient):
        assert client.get(f"{API}/stock/cycle-counts/999/sheet").status_code == 404


class TestRequisitionFlow:
    """Request, approve and fulfil over HTTP"""

    def test_request_to_transfer(self, client: TestClient, stock, milk, main_store, kitchen):
        stock.receive_batch(milk, main_store, "M1", 10, 2, expires_in_days=4)

        response = client.post(f"{API}/stock/requisitions", json={
            "requesting_warehouse_id": kitchen.id,
            "source_warehouse_id": main_store.id,
            "items": [{"stock_item_id": milk.id, "quantity": "4"}],
        })
        assert response.status_code == 201
        requisition = response.json()

        response = client.post(f"{API}/stock/requisitions/{requisition['id']}/fulfill", json={
            "items": [{"stock_item_id": milk.id, "quantity": "4"}],
        })
        assert response.status_code == 409

        client.post(f"{API}/stock/requisitions/{requisition['id']}/approve")
        response = client.post(f"{API}/stock/requisitions/{requisition['id']}/fulfill", json={
            "items": [{"stock_item_id": milk.id, "quantity": "4"}],
        })
        assert response.status_code == 200
        assert response.json()["status"] == "FULFILLED"
        assert stock.level(milk, kitchen).quantity == Decimal("4")
        stock.assert_partition(milk, kitchen)
