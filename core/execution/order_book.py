"""Limit-order book rules.

Stateless helpers over stored PENDING operations: which orders cross at a
quote, which have expired, and what a fill converts into.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from core.config import EngineConfig
from core.errors import InvalidAmount
from core.types import SATOSHIS_PER_BTC, Operation, OperationStatus, OperationType, PriceQuote


def execution_rate(op_type: OperationType, quote: PriceQuote) -> int:
    """Buys execute at the buy rate, sells at the sell rate."""
    if op_type.is_buy:
        return quote.buy_rate
    if op_type.is_sell:
        return quote.sell_rate
    raise ValueError(f"{op_type.value} is not a trade")


def btc_for_inr(inr_amount: int, rate: int) -> int:
    """Satoshis bought with `inr_amount` at `rate` (floored)."""
    return inr_amount * SATOSHIS_PER_BTC // rate


def inr_for_btc(btc_amount: int, rate: int) -> int:
    """Rupees received for `btc_amount` satoshis at `rate` (floored)."""
    return btc_amount * rate // SATOSHIS_PER_BTC


def counter_amounts(op_type: OperationType, amount: int, rate: int) -> tuple[int, int]:
    """Return (inr_amount, btc_amount) for a trade of `amount` source units.

    Raises:
        InvalidAmount: If the counter-amount rounds down to zero
    """
    if op_type.is_buy:
        btc = btc_for_inr(amount, rate)
        if btc <= 0:
            raise InvalidAmount(f"₹{amount} buys less than 1 satoshi at {rate}", amount=amount, rate=rate)
        return amount, btc
    inr = inr_for_btc(amount, rate)
    if inr <= 0:
        raise InvalidAmount(f"{amount} sat sells for less than ₹1 at {rate}", amount=amount, rate=rate)
    return inr, amount


def trade_deltas(op_type: OperationType, inr_amount: int, btc_amount: int, *, from_reserved: bool) -> dict[str, int]:
    """Ledger deltas debiting the source currency and crediting the destination."""
    if op_type.is_buy:
        source = "reserved_inr" if from_reserved else "available_inr"
        return {source: -inr_amount, "available_btc": btc_amount}
    source = "reserved_btc" if from_reserved else "available_btc"
    return {source: -btc_amount, "available_inr": inr_amount}


def check_limit_price(op_type: OperationType, limit_price: int, quote: PriceQuote, config: EngineConfig) -> None:
    """Reject limit prices far outside the current market.

    Raises:
        InvalidAmount: Buy limit above max_buy_limit_multiplier * buy_rate, or
            sell limit below min_sell_limit_multiplier * sell_rate
    """
    if op_type is OperationType.LIMIT_BUY:
        ceiling = Decimal(quote.buy_rate) * Decimal(str(config.max_buy_limit_multiplier))
        if limit_price > ceiling:
            raise InvalidAmount(
                f"Buy limit {limit_price} is too far above the market ({quote.buy_rate})",
                limit_price=limit_price,
                buy_rate=quote.buy_rate,
            )
    elif op_type is OperationType.LIMIT_SELL:
        floor = Decimal(quote.sell_rate) * Decimal(str(config.min_sell_limit_multiplier))
        if limit_price < floor:
            raise InvalidAmount(
                f"Sell limit {limit_price} is too far below the market ({quote.sell_rate})",
                limit_price=limit_price,
                sell_rate=quote.sell_rate,
            )


def is_crossed(order: Operation, quote: PriceQuote) -> bool:
    """BUY orders fill when buy_rate <= limit, SELL orders when sell_rate >= limit."""
    if order.status != OperationStatus.PENDING or order.limit_price is None:
        return False
    if order.type is OperationType.LIMIT_BUY:
        return quote.buy_rate <= order.limit_price
    if order.type is OperationType.LIMIT_SELL:
        return quote.sell_rate >= order.limit_price
    return False


def is_expired(order: Operation, now: datetime) -> bool:
    return order.status == OperationStatus.PENDING and order.expires_at is not None and order.expires_at <= now


def crossed_orders(orders: Iterable[Operation], quote: PriceQuote) -> list[Operation]:
    """Pending limit orders that should fill at `quote`, oldest first."""
    return sorted((o for o in orders if is_crossed(o, quote)), key=lambda o: o.id or 0)


def expired_orders(orders: Iterable[Operation], now: datetime) -> list[Operation]:
    return sorted((o for o in orders if is_expired(o, now)), key=lambda o: o.id or 0)
