"""DCA (rupee-cost averaging) scheduler.

Owns recurring buy/sell plans and, on each tick, turns due plans into market
orders through the order execution engine.

Idempotency: a plan's schedule is advanced with a compare-and-set on
``next_execution_at`` before any balance is touched, so replaying a tick can
never execute the same installment twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional, Sequence

from core.config import DCA_POLICY_ADVANCE, EngineConfig
from core.errors import (
    EngineError,
    InsufficientFunds,
    InvalidAmount,
    InvalidPlanState,
    PlanNotFound,
    require_positive_amount,
)
from core.execution.engine import OrderExecutionEngine
from core.execution.order_book import counter_amounts, execution_rate, trade_deltas
from core.ledger.balances import BalanceLedger
from core.persistence.interfaces import OperationStore, PlanStore
from core.types import (
    ActivePlan,
    Currency,
    Operation,
    OperationStatus,
    PlanFrequency,
    PlanStatus,
    PlanType,
    PriceQuote,
    utc_now,
)

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "insufficient_balance"


@dataclass
class DcaTickResult:
    """Outcome of one scheduler tick."""

    executed: list[Operation] = field(default_factory=list)
    skipped_price: list[int] = field(default_factory=list)
    insufficient: list[Operation] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


def next_run_after(frequency: PlanFrequency, scheduled: datetime, now: datetime) -> datetime:
    """Advance `scheduled` by whole intervals until it is after `now`.

    Missed runs are not replayed after downtime.
    """
    candidate = frequency.advance(scheduled)
    while candidate <= now:
        candidate = frequency.advance(candidate)
    return candidate


def _parse_enum(enum_cls, value, label: str):
    try:
        return enum_cls(str(value.value if hasattr(value, "value") else value).upper())
    except ValueError as e:
        raise InvalidAmount(f"Unknown {label}: {value!r}") from e


class DcaScheduler:
    """Manages DCA plans and executes due installments."""

    def __init__(
        self,
        *,
        plans: PlanStore,
        operations: OperationStore,
        ledger: BalanceLedger,
        executor: OrderExecutionEngine,
        config: EngineConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._plans = plans
        self._operations = operations
        self._ledger = ledger
        self._executor = executor
        self._config = config
        self._clock = clock

    # ---- Plan management

    def create_plan(
        self,
        user_id: int,
        plan_type: PlanType | str,
        amount_per_execution: int,
        frequency: PlanFrequency | str,
        total_executions: Optional[int] = None,
        max_price: Optional[int] = None,
        min_price: Optional[int] = None,
    ) -> ActivePlan:
        """Create an ACTIVE plan whose first run is one interval from now.

        Args:
            user_id: Plan owner
            plan_type: DCA_BUY (amount in INR) or DCA_SELL (amount in satoshis)
            amount_per_execution: Source amount spent per installment
            frequency: HOURLY, DAILY, WEEKLY or MONTHLY
            total_executions: Number of installments, None for unlimited
            max_price: Skip installments while the rate is above this
            min_price: Skip installments while the rate is below this

        Raises:
            InvalidAmount: Bad amount, frequency, count or bounds, or an amount
                worth less than one unit of the other currency at the current rate
            InsufficientFunds: Not enough available balance for one installment
        """
        parsed_type = _parse_enum(PlanType, plan_type, "plan type")
        parsed_frequency = _parse_enum(PlanFrequency, frequency, "frequency")
        require_positive_amount(amount_per_execution, name="amount_per_execution")
        if total_executions is not None:
            require_positive_amount(total_executions, name="total_executions")
        if max_price is not None:
            require_positive_amount(max_price, name="max_price")
        if min_price is not None:
            require_positive_amount(min_price, name="min_price")
        if max_price is not None and min_price is not None and max_price <= min_price:
            raise InvalidAmount("max_price must be greater than min_price", max_price=max_price, min_price=min_price)

        op_type = parsed_type.operation_type
        counter_amounts(op_type, amount_per_execution, execution_rate(op_type, self._executor.current_quote()))

        currency = Currency.INR if parsed_type is PlanType.DCA_BUY else Currency.BTC
        self._ledger.ensure_available(user_id, currency, amount_per_execution)

        now = self._clock()
        plan = self._plans.add_plan(
            plan=ActivePlan(
                user_id=user_id,
                plan_type=parsed_type,
                frequency=parsed_frequency,
                amount_per_execution=amount_per_execution,
                next_execution_at=parsed_frequency.advance(now),
                remaining_executions=total_executions,
                max_price=max_price,
                min_price=min_price,
                created_at=now,
            )
        )
        logger.info(
            "Created %s plan #%s user=%s amount=%s %s",
            parsed_type.value,
            plan.id,
            user_id,
            amount_per_execution,
            parsed_frequency.value,
        )
        return plan

    def get_plan(self, user_id: int, plan_id: int) -> ActivePlan:
        plan = self._plans.get_plan(plan_id=plan_id)
        if plan is None or plan.user_id != user_id:
            raise PlanNotFound(f"DCA plan {plan_id} not found", plan_id=plan_id)
        return plan

    def get_plans(self, user_id: int, *, include_closed: bool = True) -> Sequence[ActivePlan]:
        plans = self._plans.list_plans(user_id=user_id)
        if include_closed:
            return plans
        return [p for p in plans if p.status in (PlanStatus.ACTIVE, PlanStatus.PAUSED)]

    def pause_plan(self, user_id: int, plan_id: int) -> ActivePlan:
        plan = self.get_plan(user_id, plan_id)
        if plan.status is not PlanStatus.ACTIVE:
            raise InvalidPlanState(f"Cannot pause a {plan.status.value} plan", plan_id=plan_id)
        return self._transition(plan, replace(plan, status=PlanStatus.PAUSED))

    def resume_plan(self, user_id: int, plan_id: int) -> ActivePlan:
        """Reactivate a paused plan; the next run is one interval from now."""
        plan = self.get_plan(user_id, plan_id)
        if plan.status is not PlanStatus.PAUSED:
            raise InvalidPlanState(f"Cannot resume a {plan.status.value} plan", plan_id=plan_id)
        now = self._clock()
        resumed = replace(plan, status=PlanStatus.ACTIVE, next_execution_at=plan.frequency.advance(now))
        return self._transition(plan, resumed)

    def delete_plan(self, user_id: int, plan_id: int) -> ActivePlan:
        plan = self.get_plan(user_id, plan_id)
        if plan.status not in (PlanStatus.ACTIVE, PlanStatus.PAUSED):
            raise InvalidPlanState(f"Cannot delete a {plan.status.value} plan", plan_id=plan_id)
        return self._transition(plan, replace(plan, status=PlanStatus.CANCELLED, completed_at=self._clock()))

    def _transition(self, current: ActivePlan, updated: ActivePlan) -> ActivePlan:
        with self._ledger.user_lock(current.user_id):
            if not self._plans.compare_and_update_plan(
                plan=updated,
                expected_status=current.status,
                expected_next_execution_at=current.next_execution_at,
            ):
                raise InvalidPlanState(f"DCA plan {current.id} changed concurrently", plan_id=current.id)
        logger.info("DCA plan #%s %s -> %s", current.id, current.status.value, updated.status.value)
        return updated

    # ---- Execution

    def tick(self, quote: Optional[PriceQuote] = None, now: Optional[datetime] = None) -> DcaTickResult:
        """Execute every ACTIVE plan due at `now`.

        Per-plan failures are logged and retried on the next tick.
        """
        now = now or self._clock()
        result = DcaTickResult()
        due = self._plans.list_plans(status=PlanStatus.ACTIVE, due_before=now)
        if not due:
            return result

        quote = self._executor.current_quote(quote)
        for plan in due:
            try:
                self._run_plan(plan, quote, now, result)
            except EngineError as e:
                logger.warning("DCA plan #%s failed: %s", plan.id, e)
                result.failed.append(plan.id or 0)

        if result.executed or result.skipped_price or result.insufficient:
            logger.info(
                "DCA tick: executed=%d skipped=%d insufficient=%d failed=%d",
                len(result.executed),
                len(result.skipped_price),
                len(result.insufficient),
                len(result.failed),
            )
        return result

    def _run_plan(self, plan: ActivePlan, quote: PriceQuote, now: datetime, result: DcaTickResult) -> None:
        with self._ledger.user_lock(plan.user_id):
            current = self._plans.get_plan(plan_id=plan.id) if plan.id is not None else None
            if current is None or current.status is not PlanStatus.ACTIVE or current.next_execution_at > now:
                return

            op_type = current.plan_type.operation_type
            rate = execution_rate(op_type, quote)
            if not self._within_bounds(current, rate):
                self._skip(
                    current,
                    now,
                    f"rate {rate} outside bounds (min={current.min_price} max={current.max_price})",
                )
                result.skipped_price.append(current.id or 0)
                return
            try:
                inr_amount, btc_amount = counter_amounts(op_type, current.amount_per_execution, rate)
            except InvalidAmount as e:
                self._skip(current, now, str(e))
                result.skipped_price.append(current.id or 0)
                return

            currency = Currency.INR if current.plan_type is PlanType.DCA_BUY else Currency.BTC
            try:
                self._ledger.ensure_available(current.user_id, currency, current.amount_per_execution)
            except InsufficientFunds as e:
                recorded = self._record_insufficient(current, rate, now)
                if recorded is not None:
                    result.insufficient.append(recorded)
                logger.warning("DCA plan #%s skipped: %s", current.id, e)
                return
            self._ledger.preview(current.user_id, trade_deltas(op_type, inr_amount, btc_amount, from_reserved=False))

            remaining = current.remaining_executions
            if remaining is not None:
                remaining -= 1
            completed = remaining is not None and remaining <= 0
            advanced = replace(
                current,
                next_execution_at=next_run_after(current.frequency, current.next_execution_at, now),
                total_executions=current.total_executions + 1,
                remaining_executions=remaining,
                status=PlanStatus.COMPLETED if completed else PlanStatus.ACTIVE,
                completed_at=now if completed else None,
            )
            if not self._plans.compare_and_update_plan(
                plan=advanced,
                expected_status=PlanStatus.ACTIVE,
                expected_next_execution_at=current.next_execution_at,
            ):
                logger.info("DCA plan #%s already advanced; skipping", current.id)
                return

            try:
                operation = self._executor.execute_market_order(
                    current.user_id,
                    op_type,
                    current.amount_per_execution,
                    quote=quote,
                    parent_id=current.id,
                )
            except EngineError:
                # Put the installment back so the next tick retries it.
                self._plans.compare_and_update_plan(
                    plan=current,
                    expected_status=advanced.status,
                    expected_next_execution_at=advanced.next_execution_at,
                )
                raise
            result.executed.append(operation)

        if completed:
            logger.info("DCA plan #%s completed after %d execution(s)", current.id, advanced.total_executions)

    @staticmethod
    def _within_bounds(plan: ActivePlan, rate: int) -> bool:
        if plan.max_price is not None and rate > plan.max_price:
            return False
        if plan.min_price is not None and rate < plan.min_price:
            return False
        return True

    def _skip(self, plan: ActivePlan, now: datetime, reason: str) -> None:
        """Leave an installment unexecuted, advancing the slot under the advance policy."""
        if self._config.dca_price_bound_policy == DCA_POLICY_ADVANCE:
            deferred = replace(plan, next_execution_at=next_run_after(plan.frequency, plan.next_execution_at, now))
            self._plans.compare_and_update_plan(
                plan=deferred,
                expected_status=PlanStatus.ACTIVE,
                expected_next_execution_at=plan.next_execution_at,
            )
        logger.info(
            "DCA plan #%s skipped: %s (policy=%s)",
            plan.id,
            reason,
            self._config.dca_price_bound_policy,
        )

    def _record_insufficient(self, plan: ActivePlan, rate: int, now: datetime) -> Optional[Operation]:
        """Record the missed installment once per scheduled slot.

        Returns None when the current slot already has its record.
        """
        latest = self._operations.list_operations(user_id=plan.user_id, parent_id=plan.id, limit=1)
        if (
            latest
            and latest[0].cancellation_reason == INSUFFICIENT_BALANCE
            and latest[0].created_at >= plan.next_execution_at
        ):
            return None

        op_type = plan.plan_type.operation_type
        return self._operations.add_operation(
            operation=Operation(
                user_id=plan.user_id,
                type=op_type,
                status=OperationStatus.CANCELLED,
                inr_amount=plan.amount_per_execution if op_type.is_buy else 0,
                btc_amount=plan.amount_per_execution if op_type.is_sell else 0,
                execution_price=None,
                parent_id=plan.id,
                cancellation_reason=INSUFFICIENT_BALANCE,
                notes=f"slot={plan.next_execution_at.isoformat()} rate={rate}",
                created_at=now,
                cancelled_at=now,
            )
        )
