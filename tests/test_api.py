"""
HTTP API tests through the FastAPI TestClient, with the database and the
provider registry swapped for per-test instances.
"""
import json
import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from storefront.database import get_db
from storefront.dependencies import get_provider_registry
from storefront.main import app
from storefront.providers import build_registry
from storefront.stub_provider import StubPaymentProvider, sign_payload

from conftest import WEBHOOK_SECRET


@pytest.fixture()
def auto_complete():
    return True


@pytest.fixture()
def client(session_factory, seed_data, auto_complete):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    registry = build_registry([
        StubPaymentProvider(enabled=True, auto_complete=auto_complete, webhook_secret=WEBHOOK_SECRET)
    ])
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_registry] = lambda: registry
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def _ids(seed_data):
    return {k: str(v) for k, v in seed_data.items()}


class TestSystem:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        assert client.get("/").json()["docs"] == "/docs"


class TestOrdersAPI:
    def test_purchase_success(self, client, seed_data):
        ids = _ids(seed_data)
        r = client.post("/orders/purchase", json={
            "account_id": ids["alice"],
            "catalog_item_id": ids["gift_card"],
            "quantity": 1,
            "delivery_info": "alice@test.com",
        })
        assert r.status_code == 201
        body = r.json()
        assert body["success"] is True
        assert Decimal(body["new_balance"]) == Decimal("400.00")
        assert body["fulfillment_key"]

        balance = client.get(f"/accounts/{ids['alice']}/balance").json()
        assert Decimal(balance["balance"]) == Decimal("400.00")

    @pytest.mark.parametrize("buyer, item, quantity, http_code, error_code", [
        ("bob", "gift_card", 1, 402, "INSUFFICIENT_FUNDS"),
        ("alice", "sold_out", 1, 409, "INSUFFICIENT_STOCK"),
        ("alice", "hidden", 1, 404, "ITEM_UNAVAILABLE"),
        ("inactive", "vpn", 1, 404, "ACCOUNT_NOT_FOUND"),
        ("alice", "vpn", 0, 400, "INVALID_QUANTITY"),
    ])
    def test_purchase_failures(self, client, seed_data, buyer, item, quantity, http_code, error_code):
        ids = _ids(seed_data)
        r = client.post("/orders/purchase", json={
            "account_id": ids[buyer],
            "catalog_item_id": ids[item],
            "quantity": quantity,
        })
        assert r.status_code == http_code
        assert r.json()["success"] is False
        assert r.json()["error_code"] == error_code

    def test_insufficient_funds_reports_amounts(self, client, seed_data):
        ids = _ids(seed_data)
        body = client.post("/orders/purchase", json={
            "account_id": ids["bob"], "catalog_item_id": ids["gift_card"],
        }).json()
        assert Decimal(body["required"]) == Decimal("100.00")
        assert Decimal(body["available"]) == Decimal("50.00")

    def test_checkout_and_order_views(self, client, seed_data):
        ids = _ids(seed_data)
        r = client.post("/orders/checkout", json={
            "account_id": ids["alice"],
            "lines": [
                {"catalog_item_id": ids["gift_card"], "quantity": 1},
                {"catalog_item_id": ids["vpn"], "quantity": 2},
            ],
        })
        assert r.status_code == 201
        created = r.json()

        listing = client.get(f"/orders/accounts/{ids['alice']}").json()
        assert listing["total"] == 1
        order = listing["orders"][0]
        assert order["order_number"] == created["order_number"]
        assert len(order["items"]) == 2

        by_id = client.get(f"/orders/accounts/{ids['alice']}/{created['order_id']}")
        assert by_id.status_code == 200
        keys = [k for item in by_id.json()["items"] for k in item["keys"]]
        assert sorted(keys) == sorted(created["fulfillment_keys"])

        by_number = client.get(f"/orders/accounts/{ids['alice']}/number/{created['order_number']}")
        assert by_number.json()["id"] == created["order_id"]

    def test_order_not_found(self, client, seed_data):
        r = client.get(f"/orders/accounts/{seed_data['alice']}/{uuid.uuid4()}")
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "ORDER_NOT_FOUND"

    def test_refund_order(self, client, seed_data):
        ids = _ids(seed_data)
        order_number = client.post("/orders/purchase", json={
            "account_id": ids["alice"], "catalog_item_id": ids["gift_card"],
        }).json()["order_number"]

        r = client.post(f"/orders/{order_number}/refund", json={"reason": "Duplicate order"})
        assert r.status_code == 200
        assert r.json()["status"] == "REFUNDED"

        again = client.post(f"/orders/{order_number}/refund")
        assert again.status_code == 409

        balance = client.get(f"/accounts/{ids['alice']}/balance").json()
        assert Decimal(balance["balance"]) == Decimal("500.00")


class TestAccountsAPI:
    def test_ledger_history(self, client, seed_data):
        ids = _ids(seed_data)
        client.post("/orders/purchase", json={"account_id": ids["alice"], "catalog_item_id": ids["vpn"]})

        body = client.get(f"/accounts/{ids['alice']}/ledger", params={"limit": 10}).json()
        assert body["total"] == 2
        assert [e["kind"] for e in body["entries"]] == ["PURCHASE", "BONUS"]

    def test_adjust_balance(self, client, seed_data):
        ids = _ids(seed_data)
        r = client.post(f"/accounts/{ids['bob']}/adjust", json={"amount": "-20", "reason": "Chargeback"})
        assert r.status_code == 201
        assert r.json()["kind"] == "WITHDRAWAL"
        assert Decimal(r.json()["balance_after"]) == Decimal("30")

        overdraw = client.post(f"/accounts/{ids['bob']}/adjust", json={"amount": "-100", "reason": "x"})
        assert overdraw.status_code == 402

    def test_unknown_account_balance(self, client):
        r = client.get(f"/accounts/{uuid.uuid4()}/balance")
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "ACCOUNT_NOT_FOUND"


class TestPaymentsAPI:
    def test_deposit_completes_synchronously(self, client, seed_data):
        ids = _ids(seed_data)
        r = client.post("/payments/deposits", json={
            "account_id": ids["alice"], "amount": "200.00", "method": "card",
        })
        assert r.status_code == 201
        body = r.json()
        assert body["success"] is True
        assert body["status"] == "COMPLETED"

        status = client.get(f"/payments/{body['transaction_id']}").json()
        assert status["status"] == "COMPLETED"
        assert status["is_finalized"] is True

        balance = client.get(f"/accounts/{ids['alice']}/balance").json()
        assert Decimal(balance["balance"]) == Decimal("700.00")

    def test_negative_deposit_rejected(self, client, seed_data):
        r = client.post("/payments/deposits", json={
            "account_id": str(seed_data["alice"]), "amount": "-5.00", "method": "card",
        })
        assert r.status_code == 400
        assert r.json()["error_code"] == "INVALID_AMOUNT"

    def test_unavailable_method(self, client, seed_data):
        r = client.post("/payments/deposits", json={
            "account_id": str(seed_data["alice"]), "amount": "10", "method": "paypal",
        })
        assert r.status_code == 400
        assert r.json()["error_code"] == "METHOD_UNAVAILABLE"

    def test_list_providers(self, client):
        providers = client.get("/payments/providers", params={"method": "sbp"}).json()
        assert [p["name"] for p in providers] == ["test"]
        assert client.get("/payments/providers", params={"method": "crypto"}).json() == []

    def test_unknown_payment(self, client):
        assert client.get("/payments/TEST-missing").status_code == 404
        assert client.post("/payments/TEST-missing/complete").status_code == 404

    def test_refund(self, client, seed_data):
        ids = _ids(seed_data)
        tx_id = client.post("/payments/deposits", json={
            "account_id": ids["bob"], "amount": "30", "method": "card",
        }).json()["transaction_id"]

        r = client.post(f"/payments/{tx_id}/refund")
        assert r.status_code == 200
        assert r.json()["success"] is True
        assert client.get(f"/payments/{tx_id}").json()["status"] == "REFUNDED"


class TestWebhooksAPI:
    @pytest.fixture()
    def auto_complete(self):
        return False

    def _pending(self, client, seed_data):
        body = client.post("/payments/deposits", json={
            "account_id": str(seed_data["alice"]), "amount": "200.00", "method": "card",
        }).json()
        assert body["status"] == "PENDING"
        return body["transaction_id"]

    def test_signed_webhook_completes_payment_once(self, client, seed_data):
        tx_id = self._pending(client, seed_data)
        payload = json.dumps({"transaction_id": tx_id, "status": "COMPLETED", "amount": "200.00"}).encode()
        headers = {"X-Test-Signature": sign_payload(WEBHOOK_SECRET, payload),
                   "Content-Type": "application/json"}

        first = client.post("/api/webhooks/test", content=payload, headers=headers)
        second = client.post("/api/webhooks/test", content=payload, headers=headers)
        assert first.status_code == 200
        assert second.status_code == 200

        balance = client.get(f"/accounts/{seed_data['alice']}/balance").json()
        assert Decimal(balance["balance"]) == Decimal("700.00")
        ledger_body = client.get(f"/accounts/{seed_data['alice']}/ledger").json()
        assert [e["kind"] for e in ledger_body["entries"]].count("DEPOSIT") == 1

    def test_unsigned_webhook_rejected(self, client, seed_data):
        tx_id = self._pending(client, seed_data)
        payload = json.dumps({"transaction_id": tx_id, "status": "COMPLETED"}).encode()

        r = client.post("/api/webhooks/test", content=payload)
        assert r.status_code == 400
        assert r.json()["code"] == "WEBHOOK_REJECTED"
        assert client.get(f"/payments/{tx_id}").json()["status"] == "PENDING"

    def test_manual_completion(self, client, seed_data):
        tx_id = self._pending(client, seed_data)
        r = client.post(f"/payments/{tx_id}/complete")
        assert r.status_code == 200
        assert r.json()["completed"] is True
        assert client.get(f"/payments/{tx_id}").json()["status"] == "COMPLETED"

    def test_ping(self, client):
        assert client.get("/api/webhooks/test").json() == {"status": "ok", "provider": "test"}
        assert client.get("/api/webhooks/unknown").status_code == 404
