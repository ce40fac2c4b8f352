"""Order execution engine.

Executes market and limit BTC/INR orders against the balance ledger at the
oracle's quoted rates.

Features:
- Market orders: immediate fill at the current buy/sell rate (no slippage)
- Limit orders: full source amount reserved, filled at the *current* rate
  once the limit is crossed
- Cancellation and time-based expiry release the reservation
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, Sequence

from core.config import EngineConfig
from core.errors import (
    EngineError,
    InvalidAmount,
    OrderNotCancellable,
    OrderNotFound,
    require_positive_amount,
)
from core.execution.order_book import (
    check_limit_price,
    counter_amounts,
    crossed_orders,
    execution_rate,
    expired_orders,
    is_crossed,
    is_expired,
    trade_deltas,
)
from core.ledger.balances import BalanceLedger
from core.market_data.oracle import PriceOracle, require_fresh_quote
from core.persistence.interfaces import OperationStore
from core.types import (
    MARKET_ORDER_TYPES,
    Currency,
    Operation,
    OperationStatus,
    OperationType,
    PriceQuote,
    utc_now,
)

logger = logging.getLogger(__name__)

LIMIT_ORDER_TYPES = (OperationType.LIMIT_BUY, OperationType.LIMIT_SELL)
TRADE_TYPES = (*sorted(MARKET_ORDER_TYPES, key=lambda t: t.value), *LIMIT_ORDER_TYPES)
_PENDING_SCAN_LIMIT = 100_000


def _source_currency(op_type: OperationType) -> Currency:
    return Currency.INR if op_type.is_buy else Currency.BTC


class OrderExecutionEngine:
    """Executes trades for one system-quoted price (no order matching)."""

    def __init__(
        self,
        *,
        ledger: BalanceLedger,
        operations: OperationStore,
        oracle: PriceOracle,
        config: EngineConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._operations = operations
        self._oracle = oracle
        self._config = config
        self._clock = clock

    @property
    def config(self) -> EngineConfig:
        return self._config

    def current_quote(self, quote: Optional[PriceQuote] = None) -> PriceQuote:
        """Return `quote` (or a new oracle quote) if it is fresh enough."""
        quote = quote if quote is not None else self._oracle.get_rate()
        return require_fresh_quote(quote, self._config, now=self._clock())

    def submit_order(
        self,
        user_id: int,
        op_type: OperationType | str,
        amount: int,
        limit_price: Optional[int] = None,
        *,
        quote: Optional[PriceQuote] = None,
    ) -> Operation:
        """Submit a market or limit order.

        Args:
            user_id: Order owner
            op_type: MARKET_BUY, MARKET_SELL, LIMIT_BUY or LIMIT_SELL (legacy BUY/SELL accepted)
            amount: INR for buys, satoshis for sells
            limit_price: Required for limit orders, INR per BTC
            quote: Optional pre-fetched quote

        Returns:
            The EXECUTED (market) or PENDING (limit) operation
        """
        try:
            parsed = OperationType.parse(op_type)
        except ValueError as e:
            raise InvalidAmount(f"Unknown order type: {op_type!r}") from e

        if parsed in (OperationType.MARKET_BUY, OperationType.MARKET_SELL):
            if limit_price is not None:
                raise InvalidAmount("limit_price is only valid for limit orders")
            return self.execute_market_order(user_id, parsed, amount, quote=quote)
        if parsed in LIMIT_ORDER_TYPES:
            if limit_price is None:
                raise InvalidAmount("Limit price required for limit orders")
            return self.place_limit_order(user_id, parsed, amount, limit_price, quote=quote)
        raise InvalidAmount(f"{parsed.value} cannot be submitted as an order")

    def quote_market_order(
        self,
        op_type: OperationType | str,
        amount: int,
        *,
        quote: Optional[PriceQuote] = None,
    ) -> dict[str, int | str]:
        """Preview a market order without touching balances."""
        parsed = OperationType.parse(op_type)
        if not (parsed.is_buy or parsed.is_sell):
            raise InvalidAmount(f"{parsed.value} is not a trade")
        require_positive_amount(amount)
        quote = self.current_quote(quote)
        rate = execution_rate(parsed, quote)
        inr_amount, btc_amount = counter_amounts(parsed, amount, rate)
        return {"type": parsed.value, "rate": rate, "inr_amount": inr_amount, "btc_amount": btc_amount}

    def execute_market_order(
        self,
        user_id: int,
        op_type: OperationType,
        amount: int,
        *,
        quote: Optional[PriceQuote] = None,
        parent_id: Optional[int] = None,
    ) -> Operation:
        """Fill immediately at the current rate with one ledger commit.

        Raises:
            InvalidAmount: Non-positive amount or zero counter-amount
            InsufficientFunds: Source balance below `amount`
            StalePrice: Quote older than the configured tolerance
        """
        if op_type not in MARKET_ORDER_TYPES:
            raise InvalidAmount(f"{op_type.value} is not a market order type")
        require_positive_amount(amount)
        quote = self.current_quote(quote)
        rate = execution_rate(op_type, quote)
        inr_amount, btc_amount = counter_amounts(op_type, amount, rate)

        with self._ledger.user_lock(user_id):
            self._ledger.ensure_available(user_id, _source_currency(op_type), amount)
            deltas = trade_deltas(op_type, inr_amount, btc_amount, from_reserved=False)
            after = self._ledger.preview(user_id, deltas)
            now = self._clock()
            operation = self._operations.add_operation(
                operation=Operation(
                    user_id=user_id,
                    type=op_type,
                    status=OperationStatus.EXECUTED,
                    inr_amount=inr_amount,
                    btc_amount=btc_amount,
                    execution_price=rate,
                    parent_id=parent_id,
                    created_at=now,
                    executed_at=now,
                    inr_balance_after=after.inr_balance,
                    btc_balance_after=after.btc_balance,
                )
            )
            self._ledger.commit(user_id, deltas, kind=op_type.value, operation_id=operation.id)

        logger.info(
            "Executed %s #%s user=%s inr=%s btc=%s rate=%s",
            op_type.value,
            operation.id,
            user_id,
            inr_amount,
            btc_amount,
            rate,
        )
        return operation

    def place_limit_order(
        self,
        user_id: int,
        op_type: OperationType,
        amount: int,
        limit_price: int,
        *,
        quote: Optional[PriceQuote] = None,
    ) -> Operation:
        """Reserve the full source amount and store a PENDING order.

        A limit already crossed at placement fills straight away at the
        current rate.

        Raises:
            InvalidAmount: Bad amount/limit, or limit too far from the market
            InsufficientFunds: Source balance below `amount`
        """
        if op_type not in LIMIT_ORDER_TYPES:
            raise InvalidAmount(f"{op_type.value} is not a limit order type")
        require_positive_amount(amount)
        require_positive_amount(limit_price, name="limit_price")
        quote = self.current_quote(quote)
        check_limit_price(op_type, limit_price, quote, self._config)
        # Must be worth at least one unit at the limit price itself.
        counter_amounts(op_type, amount, limit_price)

        currency = _source_currency(op_type)
        with self._ledger.user_lock(user_id):
            self._ledger.ensure_available(user_id, currency, amount)
            now = self._clock()
            after = self._ledger.preview(
                user_id,
                {f"available_{currency.value.lower()}": -amount, f"reserved_{currency.value.lower()}": amount},
            )
            operation = self._operations.add_operation(
                operation=Operation(
                    user_id=user_id,
                    type=op_type,
                    status=OperationStatus.PENDING,
                    inr_amount=amount if op_type.is_buy else 0,
                    btc_amount=amount if op_type.is_sell else 0,
                    limit_price=limit_price,
                    created_at=now,
                    expires_at=now + self._config.limit_order_ttl,
                    inr_balance_after=after.inr_balance,
                    btc_balance_after=after.btc_balance,
                )
            )
            self._ledger.reserve(user_id, currency, amount, operation_id=operation.id)

            logger.info(
                "Placed %s #%s user=%s amount=%s limit=%s",
                op_type.value,
                operation.id,
                user_id,
                amount,
                limit_price,
            )

            if is_crossed(operation, quote):
                filled = self._fill_order(operation, quote)
                if filled is not None:
                    return filled
        return operation

    def on_price_update(self, quote: Optional[PriceQuote] = None) -> list[Operation]:
        """Fill every PENDING limit order crossed by `quote`.

        Takes one user lock at a time. Failures are logged and the order
        stays PENDING for the next tick.

        Returns:
            Orders filled on this pass
        """
        quote = self.current_quote(quote)
        now = self._clock()
        pending = self._operations.list_operations(
            status=OperationStatus.PENDING,
            types=LIMIT_ORDER_TYPES,
            limit=_PENDING_SCAN_LIMIT,
        )

        filled: list[Operation] = []
        for order in crossed_orders(pending, quote):
            if is_expired(order, now):
                continue
            try:
                result = self._fill_order(order, quote)
            except EngineError as e:
                logger.warning("Failed to fill limit order #%s: %s", order.id, e)
                continue
            if result is not None:
                filled.append(result)

        if filled:
            logger.info("Filled %d limit order(s) at buy=%s sell=%s", len(filled), quote.buy_rate, quote.sell_rate)
        return filled

    def _fill_order(self, order: Operation, quote: PriceQuote) -> Optional[Operation]:
        if order.id is None:
            raise ValueError("order.id is required")

        with self._ledger.user_lock(order.user_id):
            current = self._operations.get_operation(operation_id=order.id)
            if current is None or not is_crossed(current, quote):
                return None

            rate = execution_rate(current.type, quote)
            amount = current.inr_amount if current.type.is_buy else current.btc_amount
            inr_amount, btc_amount = counter_amounts(current.type, amount, rate)
            deltas = trade_deltas(current.type, inr_amount, btc_amount, from_reserved=True)
            after = self._ledger.preview(current.user_id, deltas)

            executed = replace(
                current,
                status=OperationStatus.EXECUTED,
                inr_amount=inr_amount,
                btc_amount=btc_amount,
                execution_price=rate,
                executed_at=self._clock(),
                inr_balance_after=after.inr_balance,
                btc_balance_after=after.btc_balance,
            )
            if not self._operations.transition_operation(operation=executed, expected_status=OperationStatus.PENDING):
                logger.info("Limit order #%s changed state before fill; skipping", current.id)
                return None
            self._ledger.commit(current.user_id, deltas, kind=current.type.value, operation_id=current.id)

        logger.info(
            "Filled %s #%s user=%s limit=%s at rate=%s",
            executed.type.value,
            executed.id,
            executed.user_id,
            executed.limit_price,
            rate,
        )
        return executed

    def cancel_order(
        self,
        user_id: int,
        operation_id: int,
        reason: Optional[str] = None,
        *,
        by_admin: bool = False,
    ) -> Operation:
        """Cancel a PENDING limit order and release its reservation.

        Raises:
            OrderNotFound: Unknown id, or owned by another user (non-admin)
            OrderNotCancellable: Order is not a PENDING limit order
        """
        order = self._operations.get_operation(operation_id=operation_id)
        if order is None or (not by_admin and order.user_id != user_id):
            raise OrderNotFound(f"Order {operation_id} not found", operation_id=operation_id)

        default_reason = "cancelled by admin" if by_admin else "cancelled by user"
        return self._close_pending(order, OperationStatus.CANCELLED, reason or default_reason)

    def expire_orders(self, now: Optional[datetime] = None) -> list[Operation]:
        """Mark PENDING limit orders past `expires_at` EXPIRED."""
        now = now or self._clock()
        pending = self._operations.list_operations(
            status=OperationStatus.PENDING,
            types=LIMIT_ORDER_TYPES,
            limit=_PENDING_SCAN_LIMIT,
        )

        expired: list[Operation] = []
        for order in expired_orders(pending, now):
            try:
                expired.append(self._close_pending(order, OperationStatus.EXPIRED, "expired"))
            except OrderNotCancellable:
                logger.debug("Order #%s left PENDING before expiry", order.id)

        if expired:
            logger.info("Expired %d limit order(s)", len(expired))
        return expired

    def _close_pending(self, order: Operation, status: OperationStatus, reason: str) -> Operation:
        if order.id is None:
            raise ValueError("order.id is required")

        with self._ledger.user_lock(order.user_id):
            current = self._operations.get_operation(operation_id=order.id)
            if current is None or current.status != OperationStatus.PENDING or current.type not in LIMIT_ORDER_TYPES:
                state = current.status.value if current is not None else "missing"
                raise OrderNotCancellable(f"Order {order.id} is {state}", operation_id=order.id, status=state)

            currency = _source_currency(current.type)
            amount = current.inr_amount if current.type.is_buy else current.btc_amount
            code = currency.value.lower()
            after = self._ledger.preview(current.user_id, {f"available_{code}": amount, f"reserved_{code}": -amount})

            closed = replace(
                current,
                status=status,
                cancellation_reason=reason,
                cancelled_at=self._clock(),
                inr_balance_after=after.inr_balance,
                btc_balance_after=after.btc_balance,
            )
            if not self._operations.transition_operation(operation=closed, expected_status=OperationStatus.PENDING):
                raise OrderNotCancellable(f"Order {order.id} is no longer pending", operation_id=order.id)
            self._ledger.release(current.user_id, currency, amount, operation_id=current.id)

        logger.info("%s %s #%s user=%s (%s)", status.value.title(), current.type.value, current.id, current.user_id, reason)
        return closed

    def get_order(self, operation_id: int, *, user_id: Optional[int] = None) -> Operation:
        order = self._operations.get_operation(operation_id=operation_id)
        if order is None or order.type not in TRADE_TYPES or (user_id is not None and order.user_id != user_id):
            raise OrderNotFound(f"Order {operation_id} not found", operation_id=operation_id)
        return order

    def list_orders(
        self,
        user_id: int,
        status: Optional[OperationStatus] = None,
        *,
        limit: int = 100,
    ) -> Sequence[Operation]:
        return self._operations.list_operations(user_id=user_id, status=status, types=TRADE_TYPES, limit=limit)
