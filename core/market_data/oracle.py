"""BTC/INR price oracle.

The engines only consume a :class:`PriceQuote`; where it comes from is an
external concern. Two sources are provided:

- ``StaticPriceOracle``: fixed, settable rates (tests, admin overrides)
- ``CoinGeckoPriceOracle``: BTC/USD from the CoinGecko free API, converted
  to INR buy/sell rates with the configured multipliers
"""

from __future__ import annotations

import logging
import random
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Optional, Protocol

import requests

from core.config import EngineConfig
from core.errors import OracleUnavailable, StalePrice
from core.types import PriceQuote, utc_now

logger = logging.getLogger(__name__)


class PriceOracle(Protocol):
    def get_rate(self) -> PriceQuote:
        """Return the latest quote or raise OracleUnavailable."""
        ...


def quote_from_usd(
    btc_usd: Decimal | float | int,
    config: EngineConfig,
    *,
    timestamp: Optional[datetime] = None,
) -> PriceQuote:
    """Convert a BTC/USD price into INR buy/sell rates."""
    try:
        usd = Decimal(str(btc_usd))
    except InvalidOperation as e:
        raise OracleUnavailable(f"Invalid BTC/USD price: {btc_usd!r}") from e
    if not usd.is_finite() or usd <= 0:
        raise OracleUnavailable(f"Invalid BTC/USD price: {btc_usd}")

    def _rate(multiplier: int) -> int:
        return int((usd * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    return PriceQuote(
        buy_rate=_rate(config.buy_multiplier),
        sell_rate=_rate(config.sell_multiplier),
        btc_usd=int(usd.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
        timestamp=timestamp or utc_now(),
    )


def require_fresh_quote(quote: PriceQuote, config: EngineConfig, *, now: Optional[datetime] = None) -> PriceQuote:
    """Fail closed on quotes older than `max_price_age_seconds`.

    Raises:
        StalePrice: If the quote is too old or has non-positive rates
    """
    now = now or utc_now()
    age = quote.age_seconds(now)
    if age > config.max_price_age_seconds:
        raise StalePrice(
            f"Price quote is {age:.0f}s old (max {config.max_price_age_seconds}s)",
            age_seconds=round(age, 1),
        )
    if quote.buy_rate <= 0 or quote.sell_rate <= 0:
        raise StalePrice("Price quote has non-positive rates")
    return quote


def fetch_quote_with_retry(
    oracle: PriceOracle,
    config: EngineConfig,
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    jitter: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> PriceQuote:
    """Fetch a fresh quote, retrying stale/unavailable prices with backoff.

    Args:
        oracle: Quote source
        config: Supplies the staleness tolerance
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        jitter: Whether to add random jitter to delays
        sleep: Injected for tests

    Returns:
        A quote that passed :func:`require_fresh_quote`

    Raises:
        StalePrice | OracleUnavailable: After the last attempt fails
    """
    for attempt in range(max_retries + 1):
        try:
            return require_fresh_quote(oracle.get_rate(), config)
        except (StalePrice, OracleUnavailable) as e:
            if attempt >= max_retries:
                logger.error("Max retries (%d) exceeded fetching price: %s", max_retries, e)
                raise

            delay = min(base_delay * (2 ** attempt), max_delay)
            if jitter:
                delay *= 0.5 + random.random()

            logger.warning(
                "Price unavailable (attempt %d/%d): %s. Retrying in %.2fs",
                attempt + 1,
                max_retries + 1,
                e,
                delay,
            )
            sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover


class StaticPriceOracle:
    """Oracle returning rates set by the caller."""

    def __init__(
        self,
        *,
        buy_rate: int,
        sell_rate: int,
        btc_usd: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._clock = clock
        self._quote = PriceQuote(buy_rate=buy_rate, sell_rate=sell_rate, btc_usd=btc_usd, timestamp=clock())

    def set_rates(self, *, buy_rate: int, sell_rate: int, btc_usd: Optional[int] = None) -> PriceQuote:
        self._quote = PriceQuote(
            buy_rate=buy_rate,
            sell_rate=sell_rate,
            btc_usd=self._quote.btc_usd if btc_usd is None else btc_usd,
            timestamp=self._clock(),
        )
        return self._quote

    def get_rate(self) -> PriceQuote:
        # Re-stamp so a static price never goes stale.
        return PriceQuote(
            buy_rate=self._quote.buy_rate,
            sell_rate=self._quote.sell_rate,
            btc_usd=self._quote.btc_usd,
            timestamp=self._clock(),
        )


class CoinGeckoPriceOracle:
    """Oracle backed by the CoinGecko simple price endpoint (free tier, no API key)."""

    BASE_URL = "https://api.coingecko.com/api/v3"

    def __init__(
        self,
        config: EngineConfig,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = BASE_URL,
    ) -> None:
        self._config = config
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/json",
                "User-Agent": "bittrade/1.0",
            }
        )

    def get_rate(self) -> PriceQuote:
        """Fetch BTC/USD and convert it to INR rates.

        Raises:
            OracleUnavailable: On HTTP errors, timeouts or malformed payloads
        """
        url = f"{self._base_url}/simple/price"
        params = {"ids": "bitcoin", "vs_currencies": "usd"}

        try:
            response = self._session.get(url, params=params, timeout=self._config.oracle_timeout_seconds)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise OracleUnavailable(f"CoinGecko API request failed: {e}") from e
        except ValueError as e:
            raise OracleUnavailable(f"CoinGecko returned invalid JSON: {e}") from e

        try:
            btc_usd = data["bitcoin"]["usd"]
        except (KeyError, TypeError) as e:
            raise OracleUnavailable(f"Unexpected CoinGecko response format: {data!r}") from e

        quote = quote_from_usd(btc_usd, self._config)
        logger.debug("CoinGecko BTC/USD=%s buy=%s sell=%s", btc_usd, quote.buy_rate, quote.sell_rate)
        return quote
