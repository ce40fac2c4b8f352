"""Platform facade.

Wires the ledger, stores, price oracle and engines together and exposes the
caller-facing operations (orders, loans, DCA plans, dashboard, admin
deposits and withdrawals).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Sequence

from core.config import EngineConfig
from core.dca.scheduler import DcaScheduler, DcaTickResult
from core.errors import InvalidAmount, require_positive_amount
from core.execution.engine import OrderExecutionEngine
from core.ledger.balances import BalanceLedger
from core.loans.engine import LoanEngine
from core.market_data.oracle import (
    CoinGeckoPriceOracle,
    PriceOracle,
    StaticPriceOracle,
    quote_from_usd,
)
from core.storage.memory_stores import MemoryStores
from core.storage.postgres.config import PostgresConfig
from core.types import (
    Currency,
    Loan,
    Operation,
    OperationStatus,
    OperationType,
    PlanStatus,
    PriceQuote,
    utc_now,
)

logger = logging.getLogger(__name__)

_DEPOSIT_TYPES = {Currency.INR: OperationType.DEPOSIT_INR, Currency.BTC: OperationType.DEPOSIT_BTC}
_WITHDRAW_TYPES = {Currency.INR: OperationType.WITHDRAW_INR, Currency.BTC: OperationType.WITHDRAW_BTC}


@dataclass
class PriceTickResult:
    quote: PriceQuote
    filled_orders: list[Operation] = field(default_factory=list)
    liquidated_loans: list[Loan] = field(default_factory=list)


def _parse_currency(currency: Currency | str) -> Currency:
    try:
        return Currency(str(currency.value if isinstance(currency, Currency) else currency).upper())
    except ValueError as e:
        raise InvalidAmount(f"Unknown currency: {currency!r}") from e


class Platform:
    """Single entrypoint for the trading core."""

    def __init__(
        self,
        *,
        stores: Any,
        oracle: PriceOracle,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or EngineConfig()
        self.stores = stores
        self.oracle = oracle
        self.clock = clock
        self.ledger = BalanceLedger(stores)
        self.orders = OrderExecutionEngine(
            ledger=self.ledger,
            operations=stores,
            oracle=oracle,
            config=self.config,
            clock=clock,
        )
        self.loans = LoanEngine(
            ledger=self.ledger,
            loans=stores,
            operations=stores,
            oracle=oracle,
            config=self.config,
            clock=clock,
        )
        self.dca = DcaScheduler(
            plans=stores,
            operations=stores,
            ledger=self.ledger,
            executor=self.orders,
            config=self.config,
            clock=clock,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Platform":
        """Build a platform from environment variables.

        - DATABASE_URL: use PostgreSQL stores (in-memory otherwise)
        - BITTRADE_STATIC_BTC_USD: fixed BTC/USD price instead of CoinGecko
        - BITTRADE_*: engine settings, see EngineConfig.from_env
        """
        env = os.environ if environ is None else environ
        config = EngineConfig.from_env(env)

        pg_config = PostgresConfig.from_env(env)
        if pg_config is not None:
            from core.storage.postgres.stores import PostgresStores

            stores: Any = PostgresStores(config=pg_config)
            logger.info("Using PostgreSQL stores")
        else:
            stores = MemoryStores()
            logger.warning("DATABASE_URL not set; using in-memory stores (state is lost on restart)")

        static_usd = (env.get("BITTRADE_STATIC_BTC_USD") or "").strip()
        if static_usd:
            quote = quote_from_usd(static_usd, config)
            oracle: PriceOracle = StaticPriceOracle(
                buy_rate=quote.buy_rate,
                sell_rate=quote.sell_rate,
                btc_usd=quote.btc_usd,
            )
            logger.info("Using static BTC/USD price %s", static_usd)
        else:
            oracle = CoinGeckoPriceOracle(config)

        return cls(stores=stores, oracle=oracle, config=config)

    # ---- Orders

    def submit_order(
        self,
        user_id: int,
        op_type: OperationType | str,
        amount: int,
        limit_price: Optional[int] = None,
    ) -> Operation:
        return self.orders.submit_order(user_id, op_type, amount, limit_price)

    def cancel_order(self, user_id: int, operation_id: int, reason: Optional[str] = None) -> Operation:
        return self.orders.cancel_order(user_id, operation_id, reason)

    def admin_cancel_order(self, operation_id: int, reason: Optional[str] = None) -> Operation:
        order = self.orders.get_order(operation_id)
        return self.orders.cancel_order(order.user_id, operation_id, reason, by_admin=True)

    # ---- Funding (admin)

    def deposit(self, user_id: int, currency: Currency | str, amount: int, *, note: Optional[str] = None) -> Operation:
        """Credit external funds to available balance."""
        parsed = _parse_currency(currency)
        require_positive_amount(amount)
        return self._fund(user_id, _DEPOSIT_TYPES[parsed], f"available_{parsed.value.lower()}", amount, parsed, note)

    def withdraw(self, user_id: int, currency: Currency | str, amount: int, *, note: Optional[str] = None) -> Operation:
        """Debit available balance to an external destination.

        Raises:
            InsufficientFunds: available balance below `amount`
        """
        parsed = _parse_currency(currency)
        require_positive_amount(amount)
        with self.ledger.user_lock(user_id):
            self.ledger.ensure_available(user_id, parsed, amount)
            return self._fund(
                user_id, _WITHDRAW_TYPES[parsed], f"available_{parsed.value.lower()}", -amount, parsed, note
            )

    def _fund(
        self,
        user_id: int,
        op_type: OperationType,
        field_name: str,
        delta: int,
        currency: Currency,
        note: Optional[str],
    ) -> Operation:
        with self.ledger.user_lock(user_id):
            after = self.ledger.preview(user_id, {field_name: delta})
            now = self.clock()
            operation = self.stores.add_operation(
                operation=Operation(
                    user_id=user_id,
                    type=op_type,
                    status=OperationStatus.EXECUTED,
                    inr_amount=abs(delta) if currency is Currency.INR else 0,
                    btc_amount=abs(delta) if currency is Currency.BTC else 0,
                    notes=note,
                    created_at=now,
                    executed_at=now,
                    inr_balance_after=after.inr_balance,
                    btc_balance_after=after.btc_balance,
                )
            )
            self.ledger.adjust(user_id, field_name, delta, kind=op_type.value, operation_id=operation.id)

        logger.info("%s user=%s amount=%s", op_type.value, user_id, abs(delta))
        return operation

    # ---- Read-only

    def get_dashboard(self, user_id: int) -> dict[str, Any]:
        """Balances, current rates, loan status, open orders and plans."""
        quote = self.orders.current_quote()
        balance = self.ledger.get_balance(user_id)

        loan = self.loans.get_active_loan(user_id)
        loan_status = None
        if loan is not None:
            loan_status = {"loan": loan.to_dict(), "risk": self.loans.evaluate(loan, quote=quote).to_dict()}

        pending = self.orders.list_orders(user_id, OperationStatus.PENDING)
        plans = [p for p in self.dca.get_plans(user_id) if p.status in (PlanStatus.ACTIVE, PlanStatus.PAUSED)]

        return {
            "user_id": user_id,
            "balances": {
                **balance.to_dict(),
                "inr_balance": balance.inr_balance,
                "btc_balance": balance.btc_balance,
            },
            "rates": {
                "buy_rate": quote.buy_rate,
                "sell_rate": quote.sell_rate,
                "btc_usd": quote.btc_usd,
                "timestamp": quote.timestamp.isoformat(),
            },
            "loan": loan_status,
            "pending_orders": [op.to_dict() for op in pending],
            "dca_plans": [p.to_dict() for p in plans],
            "config_version": self.config.version,
        }

    def list_operations(
        self,
        user_id: int,
        *,
        op_type: Optional[OperationType | str] = None,
        status: Optional[OperationStatus] = None,
        limit: int = 100,
    ) -> Sequence[Operation]:
        types = [OperationType.parse(op_type)] if op_type is not None else None
        return self.stores.list_operations(user_id=user_id, status=status, types=types, limit=limit)

    # ---- Background work

    def on_price_tick(self, quote: Optional[PriceQuote] = None) -> PriceTickResult:
        """Fill crossed limit orders and liquidate breached loans at one quote."""
        quote = self.orders.current_quote(quote)
        result = PriceTickResult(quote=quote)
        result.filled_orders = self.orders.on_price_update(quote)
        result.liquidated_loans = self.loans.check_liquidations(quote)
        return result

    def run_dca_tick(self, quote: Optional[PriceQuote] = None) -> DcaTickResult:
        return self.dca.tick(quote)

    def accrue_interest(self) -> list[Operation]:
        return self.loans.accrue_interest()

    def expire_orders(self) -> list[Operation]:
        return self.orders.expire_orders()
