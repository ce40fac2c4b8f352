"""Tests for the Platform facade: funding, dashboard, wiring from the environment."""

from __future__ import annotations

import pytest

from core.errors import InsufficientFunds, InvalidAmount
from core.market_data.oracle import CoinGeckoPriceOracle, StaticPriceOracle
from core.platform import Platform
from core.storage.memory_stores import MemoryStores
from core.storage.postgres.stores import PostgresStores
from core.types import OperationStatus, OperationType


class TestFunding:
    def test_deposit_records_operation_and_event(self, platform: Platform):
        op = platform.deposit(1, "inr", 25_000, note="bank transfer")

        assert op.type is OperationType.DEPOSIT_INR
        assert op.status is OperationStatus.EXECUTED
        assert op.inr_amount == 25_000
        assert op.inr_balance_after == 25_000
        assert op.notes == "bank transfer"

        events = platform.ledger.events(1)
        assert len(events) == 1
        assert events[0].operation_id == op.id
        assert events[0].kind == "DEPOSIT_INR"

    def test_withdraw(self, platform: Platform, fund):
        fund(1, btc=50_000)
        op = platform.withdraw(1, "BTC", 20_000)

        assert op.type is OperationType.WITHDRAW_BTC
        assert op.btc_amount == 20_000
        assert platform.ledger.get_balance(1).available_btc == 30_000

    def test_withdraw_cannot_touch_reserved_funds(self, platform: Platform, fund):
        fund(1, inr=50_000)
        platform.submit_order(1, "LIMIT_BUY", 40_000, limit_price=9_000_000)
        with pytest.raises(InsufficientFunds):
            platform.withdraw(1, "INR", 20_000)

    @pytest.mark.parametrize(("currency", "amount"), [("USD", 10), ("INR", 0), ("BTC", -1)])
    def test_rejects_bad_input(self, platform: Platform, currency, amount):
        with pytest.raises(InvalidAmount):
            platform.deposit(1, currency, amount)


def test_dashboard(platform: Platform, fund):
    fund(1, inr=100_000, btc=2_000_000)
    platform.submit_order(1, "LIMIT_BUY", 10_000, limit_price=9_000_000)
    platform.loans.deposit_collateral(1, 1_000_000)
    platform.loans.borrow(1, 30_000)
    platform.dca.create_plan(1, "DCA_BUY", 1_000, "DAILY")

    dashboard = platform.get_dashboard(1)

    assert dashboard["balances"]["available_inr"] == 120_000
    assert dashboard["balances"]["reserved_inr"] == 10_000
    assert dashboard["balances"]["inr_balance"] == 130_000
    assert dashboard["balances"]["collateral_btc"] == 1_000_000
    assert dashboard["rates"]["buy_rate"] == 9_200_000
    assert dashboard["rates"]["sell_rate"] == 9_000_000
    assert dashboard["loan"]["risk"]["risk_level"] == "LOW"
    assert len(dashboard["pending_orders"]) == 1
    assert len(dashboard["dca_plans"]) == 1
    assert dashboard["config_version"] == 1


def test_dashboard_for_new_user(platform: Platform):
    dashboard = platform.get_dashboard(99)
    assert dashboard["loan"] is None
    assert dashboard["pending_orders"] == []
    assert dashboard["balances"]["btc_balance"] == 0


def test_list_operations_filters_by_type(platform: Platform, fund):
    fund(1, inr=100_000)
    platform.submit_order(1, "BUY", 10_000)
    platform.submit_order(1, "MARKET_BUY", 5_000)

    buys = platform.list_operations(1, op_type="BUY")
    assert [op.inr_amount for op in buys] == [5_000, 10_000]
    assert len(platform.list_operations(1)) == 3


def test_conservation_across_mixed_activity(platform: Platform, fund, oracle, clock):
    fund(1, inr=500_000, btc=3_000_000)
    platform.submit_order(1, "MARKET_BUY", 50_000)
    platform.submit_order(1, "MARKET_SELL", 100_000)
    platform.submit_order(1, "LIMIT_BUY", 20_000, limit_price=9_000_000)
    sell = platform.submit_order(1, "LIMIT_SELL", 300_000, limit_price=9_500_000)
    platform.cancel_order(1, sell.id)
    platform.loans.deposit_collateral(1, 1_000_000)
    platform.loans.borrow(1, 40_000)
    platform.dca.create_plan(1, "DCA_SELL", 10_000, "HOURLY")

    clock.advance(hours=1)
    oracle.set_rates(buy_rate=8_900_000, sell_rate=8_700_000)
    platform.on_price_tick()
    platform.run_dca_tick()
    platform.loans.repay(1, 5_000)

    balance = platform.ledger.get_balance(1)
    assert platform.ledger.ledger_total(1, "INR") == balance.inr_balance
    assert platform.ledger.ledger_total(1, "BTC") == balance.btc_balance
    assert balance.reserved_inr == 0
    assert balance.reserved_btc == 0


class TestFromEnv:
    def test_defaults_to_memory_and_coingecko(self):
        platform = Platform.from_env({})
        assert isinstance(platform.stores, MemoryStores)
        assert isinstance(platform.oracle, CoinGeckoPriceOracle)

    def test_static_price_and_config(self):
        platform = Platform.from_env({"BITTRADE_STATIC_BTC_USD": "100000", "BITTRADE_INTEREST_RATE": "12"})

        assert isinstance(platform.oracle, StaticPriceOracle)
        quote = platform.oracle.get_rate()
        assert (quote.buy_rate, quote.sell_rate) == (9_100_000, 8_800_000)
        assert platform.config.interest_rate == 12

    def test_database_url_selects_postgres(self):
        platform = Platform.from_env({"DATABASE_URL": "postgresql://user@localhost/bittrade"})
        assert isinstance(platform.stores, PostgresStores)
