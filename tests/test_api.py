"""Tests for the HTTP API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api import main as api_main
from api.main import app
from core.platform import Platform


@pytest.fixture(autouse=True)
def use_test_platform(platform: Platform):
    """Route every request to the in-memory test platform."""
    api_main.set_platform(platform)
    yield
    api_main.set_platform(None)


@pytest.fixture
def client():
    return TestClient(app)


def _deposit(client: TestClient, user_id: int, currency: str, amount: int) -> None:
    response = client.post(f"/admin/users/{user_id}/deposit", json={"currency": currency, "amount": amount})
    assert response.status_code == 200


def test_health(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["storage"] == "MemoryStores"
    assert data["database"] == {"configured": False}


class TestOrders:
    def test_market_buy(self, client: TestClient):
        _deposit(client, 1, "INR", 100_000)

        response = client.post("/users/1/orders", json={"type": "MARKET_BUY", "amount": 10_000})

        assert response.status_code == 200
        order = response.json()["order"]
        assert order["status"] == "EXECUTED"
        assert order["execution_price"] == 9_200_000
        assert order["btc_amount"] == 108_695

    def test_insufficient_funds_is_400(self, client: TestClient):
        response = client.post("/users/1/orders", json={"type": "MARKET_BUY", "amount": 10_000})

        assert response.status_code == 400
        assert response.json()["error"] == "InsufficientFunds"

    def test_validation_error_for_non_positive_amount(self, client: TestClient):
        response = client.post("/users/1/orders", json={"type": "MARKET_BUY", "amount": 0})
        assert response.status_code == 422

    def test_limit_order_list_and_cancel(self, client: TestClient):
        _deposit(client, 1, "INR", 50_000)
        placed = client.post(
            "/users/1/orders", json={"type": "LIMIT_BUY", "amount": 10_000, "limit_price": 9_000_000}
        ).json()["order"]
        assert placed["status"] == "PENDING"

        pending = client.get("/users/1/orders", params={"status": "PENDING"}).json()["orders"]
        assert [o["id"] for o in pending] == [placed["id"]]

        response = client.delete(f"/users/1/orders/{placed['id']}")
        assert response.status_code == 200
        assert response.json()["order"]["status"] == "CANCELLED"

        again = client.delete(f"/users/1/orders/{placed['id']}")
        assert again.status_code == 409
        assert again.json()["error"] == "OrderNotCancellable"

    def test_cancel_unknown_order_is_404(self, client: TestClient):
        response = client.delete("/users/1/orders/999")
        assert response.status_code == 404
        assert response.json()["error"] == "OrderNotFound"

    def test_admin_cancel(self, client: TestClient):
        _deposit(client, 1, "BTC", 100_000)
        placed = client.post(
            "/users/1/orders", json={"type": "LIMIT_SELL", "amount": 50_000, "limit_price": 9_500_000}
        ).json()["order"]

        response = client.post(f"/admin/orders/{placed['id']}/cancel", json={"reason": "ops"})

        assert response.status_code == 200
        assert response.json()["order"]["cancellation_reason"] == "ops"

    def test_operations_history(self, client: TestClient):
        _deposit(client, 1, "INR", 100_000)
        client.post("/users/1/orders", json={"type": "BUY", "amount": 1_000})

        response = client.get("/users/1/operations", params={"type": "MARKET_BUY"})
        assert response.status_code == 200
        assert len(response.json()["operations"]) == 1

        assert client.get("/users/1/operations", params={"type": "SWAP"}).status_code == 400


class TestLoans:
    def test_loan_flow(self, client: TestClient):
        _deposit(client, 1, "BTC", 1_000_000)

        opened = client.post("/users/1/loan/collateral", json={"amount": 1_000_000})
        assert opened.status_code == 200
        assert opened.json()["loan"]["status"] == "ACTIVE"

        borrowed = client.post("/users/1/loan/borrow", json={"amount": 54_000})
        assert borrowed.status_code == 200
        assert borrowed.json()["loan"]["liquidation_price"] == 6_000_000

        too_much = client.post("/users/1/loan/borrow", json={"amount": 1})
        assert too_much.status_code == 400
        assert too_much.json()["error"] == "LtvExceeded"
        assert too_much.json()["message"] == "Insufficient borrowing capacity. Available: ₹0"

        status = client.get("/users/1/loan").json()
        assert status["risk"]["ltv"] == 60.0
        assert status["risk"]["total_due"] == 54_666

        repaid = client.post("/users/1/loan/repay", json={"amount": 10_000})
        assert repaid.status_code == 200

        history = client.get("/users/1/loan/history").json()["operations"]
        assert [op["type"] for op in history] == ["LOAN_REPAY", "LOAN_BORROW", "LOAN_CREATE"]
        assert repaid.json()["loan"]["inr_borrowed_amount"] == 44_000

    def test_second_loan_conflicts(self, client: TestClient):
        _deposit(client, 1, "BTC", 2_000_000)
        client.post("/users/1/loan/collateral", json={"amount": 1_000_000})

        response = client.post("/users/1/loan/collateral", json={"amount": 1_000_000})
        assert response.status_code == 409
        assert response.json()["error"] == "LoanAlreadyActive"

    def test_no_active_loan_is_404(self, client: TestClient):
        response = client.get("/users/1/loan")
        assert response.status_code == 404
        assert response.json()["error"] == "NoActiveLoan"

    def test_partial_and_admin_liquidation(self, client: TestClient):
        _deposit(client, 1, "BTC", 2_000_000)
        client.post("/users/1/loan/collateral", json={"amount": 1_000_000})
        client.post("/users/1/loan/add-collateral", json={"amount": 500_000})
        client.post("/users/1/loan/borrow", json={"amount": 50_000})

        partial = client.post("/users/1/loan/partial-liquidation", json={"amount": 100_000})
        assert partial.status_code == 200
        assert partial.json()["loan"]["btc_collateral_amount"] == 1_400_000

        liquidated = client.post("/admin/users/1/loan/liquidate", json={})
        assert liquidated.status_code == 200
        assert liquidated.json()["loan"]["status"] == "LIQUIDATED"


class TestDcaPlans:
    def test_plan_lifecycle(self, client: TestClient):
        _deposit(client, 1, "INR", 10_000)

        created = client.post(
            "/users/1/dca-plans",
            json={"plan_type": "DCA_BUY", "amount_per_execution": 1_000, "frequency": "DAILY", "max_price": 9_500_000},
        )
        assert created.status_code == 200
        plan_id = created.json()["plan"]["id"]

        paused = client.patch(f"/users/1/dca-plans/{plan_id}/pause")
        assert paused.json()["plan"]["status"] == "PAUSED"

        again = client.patch(f"/users/1/dca-plans/{plan_id}/pause")
        assert again.status_code == 409
        assert again.json()["error"] == "InvalidPlanState"

        resumed = client.patch(f"/users/1/dca-plans/{plan_id}/resume")
        assert resumed.json()["plan"]["status"] == "ACTIVE"

        deleted = client.delete(f"/users/1/dca-plans/{plan_id}")
        assert deleted.json()["plan"]["status"] == "CANCELLED"

        plans = client.get("/users/1/dca-plans").json()["plans"]
        assert [p["status"] for p in plans] == ["CANCELLED"]

    def test_unknown_plan_is_404(self, client: TestClient):
        response = client.patch("/users/1/dca-plans/42/pause")
        assert response.status_code == 404
        assert response.json()["error"] == "PlanNotFound"

    def test_bad_frequency_is_422(self, client: TestClient):
        response = client.post(
            "/users/1/dca-plans",
            json={"plan_type": "DCA_BUY", "amount_per_execution": 1_000, "frequency": "YEARLY"},
        )
        assert response.status_code == 422


class TestAdmin:
    def test_withdraw_and_ledger_check(self, client: TestClient):
        _deposit(client, 3, "INR", 5_000)

        response = client.post("/admin/users/3/withdraw", json={"currency": "INR", "amount": 2_000})
        assert response.status_code == 200
        assert response.json()["operation"]["type"] == "WITHDRAW_INR"

        overdraw = client.post("/admin/users/3/withdraw", json={"currency": "INR", "amount": 5_000})
        assert overdraw.status_code == 400

        ledger = client.get("/admin/users/3/ledger").json()
        assert ledger["balance"]["available_inr"] == 3_000
        assert ledger["ledger_totals"]["INR"] == 3_000
        assert ledger["consistent"] is True


def test_stale_price_is_503(client: TestClient, oracle, monkeypatch):
    from core.errors import StalePrice

    def _stale():
        raise StalePrice("Price quote is 300s old (max 120s)")

    monkeypatch.setattr(oracle, "get_rate", _stale)
    _deposit(client, 1, "INR", 10_000)

    response = client.post("/users/1/orders", json={"type": "MARKET_BUY", "amount": 1_000})
    assert response.status_code == 503
    assert response.json()["error"] == "StalePrice"


def test_dashboard(client: TestClient):
    _deposit(client, 1, "INR", 10_000)
    data = client.get("/users/1/dashboard").json()
    assert data["balances"]["available_inr"] == 10_000
    assert data["rates"]["sell_rate"] == 9_000_000
    assert data["loan"] is None
