"""Tests for the DCA scheduler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from core.config import EngineConfig
from core.dca.scheduler import INSUFFICIENT_BALANCE, next_run_after
from core.errors import InsufficientFunds, InvalidAmount, InvalidPlanState, PlanNotFound
from core.platform import Platform
from core.types import OperationStatus, OperationType, PlanFrequency, PlanStatus


def test_next_run_after_skips_missed_runs():
    scheduled = datetime(2025, 1, 1, 9, tzinfo=timezone.utc)
    now = datetime(2025, 1, 4, 12, tzinfo=timezone.utc)
    assert next_run_after(PlanFrequency.DAILY, scheduled, now) == datetime(2025, 1, 5, 9, tzinfo=timezone.utc)


def test_next_run_after_is_strictly_later():
    scheduled = datetime(2025, 1, 1, 9, tzinfo=timezone.utc)
    assert next_run_after(PlanFrequency.HOURLY, scheduled, scheduled) == scheduled + timedelta(hours=1)


class TestPlanManagement:
    def test_first_run_is_one_interval_out(self, platform: Platform, fund, clock):
        fund(1, inr=10_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "daily", total_executions=5)

        assert plan.status is PlanStatus.ACTIVE
        assert plan.next_execution_at == clock() + timedelta(days=1)
        assert plan.remaining_executions == 5
        assert plan.total_executions == 0

    def test_create_requires_one_installment_of_funds(self, platform: Platform, fund):
        fund(1, btc=500)
        with pytest.raises(InsufficientFunds):
            platform.dca.create_plan(1, "DCA_SELL", 1_000, "WEEKLY")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"plan_type": "DCA_HOLD", "frequency": "DAILY"},
            {"plan_type": "DCA_BUY", "frequency": "YEARLY"},
            {"plan_type": "DCA_BUY", "frequency": "DAILY", "max_price": 100, "min_price": 200},
            {"plan_type": "DCA_BUY", "frequency": "DAILY", "total_executions": 0},
        ],
    )
    def test_invalid_plans(self, platform: Platform, fund, kwargs):
        fund(1, inr=10_000)
        with pytest.raises(InvalidAmount):
            platform.dca.create_plan(1, amount_per_execution=1_000, **kwargs)

    def test_amount_worth_less_than_one_counter_unit_is_refused(self, platform: Platform, fund):
        fund(1, btc=1_000)
        with pytest.raises(InvalidAmount, match="less than ₹1"):
            platform.dca.create_plan(1, "DCA_SELL", 1, "DAILY")
        assert platform.dca.get_plans(1) == []

    def test_pause_resume_delete(self, platform: Platform, fund, clock):
        fund(1, inr=10_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "HOURLY")

        paused = platform.dca.pause_plan(1, plan.id)
        assert paused.status is PlanStatus.PAUSED
        with pytest.raises(InvalidPlanState):
            platform.dca.pause_plan(1, plan.id)

        clock.advance(hours=5)
        resumed = platform.dca.resume_plan(1, plan.id)
        assert resumed.status is PlanStatus.ACTIVE
        assert resumed.next_execution_at == clock() + timedelta(hours=1)

        deleted = platform.dca.delete_plan(1, plan.id)
        assert deleted.status is PlanStatus.CANCELLED
        with pytest.raises(InvalidPlanState):
            platform.dca.resume_plan(1, plan.id)

    def test_paused_plan_does_not_run(self, platform: Platform, fund, clock):
        fund(1, inr=10_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "HOURLY")
        platform.dca.pause_plan(1, plan.id)

        clock.advance(hours=2)
        assert platform.run_dca_tick().executed == []

    def test_plans_are_private(self, platform: Platform, fund):
        fund(1, inr=10_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "DAILY")
        with pytest.raises(PlanNotFound):
            platform.dca.get_plan(2, plan.id)
        assert platform.dca.get_plans(2) == []


class TestExecution:
    def test_due_plan_executes_market_order(self, platform: Platform, fund, clock):
        fund(1, inr=10_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "DAILY", total_executions=3)

        assert platform.run_dca_tick().executed == []

        clock.advance(days=1)
        result = platform.run_dca_tick()

        assert len(result.executed) == 1
        op = result.executed[0]
        assert op.type is OperationType.DCA_BUY
        assert op.status is OperationStatus.EXECUTED
        assert op.parent_id == plan.id
        assert op.execution_price == 9_200_000
        assert op.btc_amount == 10_869

        stored = platform.dca.get_plan(1, plan.id)
        assert stored.total_executions == 1
        assert stored.remaining_executions == 2
        assert stored.next_execution_at == plan.next_execution_at + timedelta(days=1)
        assert platform.ledger.get_balance(1).available_inr == 9_000

    def test_replayed_tick_is_a_no_op(self, platform: Platform, fund, clock):
        fund(1, inr=10_000)
        platform.dca.create_plan(1, "DCA_BUY", 1_000, "DAILY")
        clock.advance(days=1)

        assert len(platform.run_dca_tick().executed) == 1
        assert platform.run_dca_tick().executed == []
        assert platform.ledger.get_balance(1).available_inr == 9_000

    def test_plan_completes_after_last_installment(self, platform: Platform, fund, clock):
        fund(1, btc=100_000)
        plan = platform.dca.create_plan(1, "DCA_SELL", 10_000, "DAILY", total_executions=2)

        for _ in range(2):
            clock.advance(days=1)
            platform.run_dca_tick()

        stored = platform.dca.get_plan(1, plan.id)
        assert stored.status is PlanStatus.COMPLETED
        assert stored.remaining_executions == 0
        assert stored.completed_at == clock()
        assert platform.ledger.get_balance(1).available_btc == 80_000
        assert platform.ledger.get_balance(1).available_inr == 1_800

        clock.advance(days=1)
        assert platform.run_dca_tick().executed == []

    def test_missed_runs_are_not_replayed(self, platform: Platform, fund, clock):
        fund(1, inr=10_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "HOURLY")
        clock.advance(hours=5, minutes=30)

        assert len(platform.run_dca_tick().executed) == 1
        stored = platform.dca.get_plan(1, plan.id)
        assert stored.next_execution_at == plan.next_execution_at + timedelta(hours=5)

    def test_insufficient_balance_records_cancelled_operation(self, platform: Platform, fund, clock):
        fund(1, inr=1_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "DAILY")
        platform.withdraw(1, "INR", 500)
        clock.advance(days=1)

        result = platform.run_dca_tick()

        assert result.executed == []
        assert len(result.insufficient) == 1
        skipped = result.insufficient[0]
        assert skipped.status is OperationStatus.CANCELLED
        assert skipped.cancellation_reason == INSUFFICIENT_BALANCE
        assert skipped.parent_id == plan.id

        # Plan unchanged: retried on the next tick.
        stored = platform.dca.get_plan(1, plan.id)
        assert stored.next_execution_at == plan.next_execution_at
        assert stored.total_executions == 0
        assert platform.ledger.get_balance(1).available_inr == 500


class TestPriceBounds:
    def test_above_max_price_advances_by_default(self, platform: Platform, fund, clock, oracle):
        fund(1, inr=10_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "DAILY", max_price=9_500_000)
        oracle.set_rates(buy_rate=9_600_000, sell_rate=9_400_000)
        clock.advance(days=1)

        result = platform.run_dca_tick()

        assert result.executed == []
        assert result.skipped_price == [plan.id]
        stored = platform.dca.get_plan(1, plan.id)
        assert stored.next_execution_at == plan.next_execution_at + timedelta(days=1)
        assert stored.total_executions == 0
        assert platform.ledger.get_balance(1).available_inr == 10_000

    def test_above_max_price_holds_under_hold_policy(self, stores, oracle, clock):
        platform = Platform(
            stores=stores,
            oracle=oracle,
            config=EngineConfig(dca_price_bound_policy="hold"),
            clock=clock,
        )
        platform.deposit(1, "INR", 10_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "DAILY", max_price=9_500_000)
        oracle.set_rates(buy_rate=9_600_000, sell_rate=9_400_000)
        clock.advance(days=1)

        result = platform.run_dca_tick()

        assert result.skipped_price == [plan.id]
        assert platform.dca.get_plan(1, plan.id).next_execution_at == plan.next_execution_at

        # Executes as soon as the price is back within bounds.
        oracle.set_rates(buy_rate=9_400_000, sell_rate=9_200_000)
        clock.advance(minutes=1)
        assert len(platform.run_dca_tick().executed) == 1

    def test_below_min_price_skips_sell(self, platform: Platform, fund, clock):
        fund(1, btc=100_000)
        plan = platform.dca.create_plan(1, "DCA_SELL", 10_000, "DAILY", min_price=9_100_000)
        clock.advance(days=1)

        assert platform.run_dca_tick().skipped_price == [plan.id]
        assert platform.ledger.get_balance(1).available_btc == 100_000


class TestInstallmentChecks:
    def test_installment_below_one_rupee_is_skipped_not_consumed(self, platform: Platform, fund, clock, oracle):
        fund(1, btc=1_000)
        plan = platform.dca.create_plan(1, "DCA_SELL", 100, "DAILY", total_executions=1)
        oracle.set_rates(buy_rate=1_000_000, sell_rate=900_000)
        clock.advance(days=1)

        result = platform.run_dca_tick()

        assert result.executed == []
        assert result.skipped_price == [plan.id]
        stored = platform.dca.get_plan(1, plan.id)
        assert stored.status is PlanStatus.ACTIVE
        assert (stored.total_executions, stored.remaining_executions) == (0, 1)
        assert stored.next_execution_at == plan.next_execution_at + timedelta(days=1)
        assert platform.ledger.get_balance(1).available_btc == 1_000

        oracle.set_rates(buy_rate=9_200_000, sell_rate=9_000_000)
        clock.advance(days=1)
        assert len(platform.run_dca_tick().executed) == 1
        assert platform.dca.get_plan(1, plan.id).status is PlanStatus.COMPLETED

    def test_failed_execution_leaves_installment_due(self, platform: Platform, fund, clock, monkeypatch):
        fund(1, inr=10_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "DAILY", total_executions=1)
        monkeypatch.setattr(
            platform.orders, "execute_market_order", Mock(side_effect=InsufficientFunds("withdrawn elsewhere"))
        )
        clock.advance(days=1)

        result = platform.run_dca_tick()

        assert result.failed == [plan.id]
        stored = platform.dca.get_plan(1, plan.id)
        assert stored.status is PlanStatus.ACTIVE
        assert stored.next_execution_at == plan.next_execution_at
        assert (stored.total_executions, stored.remaining_executions) == (0, 1)

    def test_one_insufficient_record_per_slot(self, platform: Platform, fund, clock):
        fund(1, inr=1_000)
        plan = platform.dca.create_plan(1, "DCA_BUY", 1_000, "DAILY")
        platform.withdraw(1, "INR", 500)
        clock.advance(days=1)

        first = platform.run_dca_tick()
        for _ in range(3):
            clock.advance(minutes=1)
            assert platform.run_dca_tick().insufficient == []

        assert len(first.insufficient) == 1
        records = platform.stores.list_operations(parent_id=plan.id)
        assert [(op.status, op.cancellation_reason) for op in records] == [
            (OperationStatus.CANCELLED, INSUFFICIENT_BALANCE)
        ]

        # Funded again: the pending slot executes, then the next slot gets its own record.
        platform.deposit(1, "INR", 500)
        assert len(platform.run_dca_tick().executed) == 1
        clock.advance(days=1)
        assert len(platform.run_dca_tick().insufficient) == 1
        assert len(platform.stores.list_operations(parent_id=plan.id, status=OperationStatus.CANCELLED)) == 2
