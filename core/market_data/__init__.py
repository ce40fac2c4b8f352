"""Market data: BTC/USD price oracle and derived INR rates."""

from core.market_data.oracle import (
    CoinGeckoPriceOracle,
    PriceOracle,
    StaticPriceOracle,
    fetch_quote_with_retry,
    quote_from_usd,
    require_fresh_quote,
)

__all__ = [
    "PriceOracle",
    "StaticPriceOracle",
    "CoinGeckoPriceOracle",
    "quote_from_usd",
    "require_fresh_quote",
    "fetch_quote_with_retry",
]
