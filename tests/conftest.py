"""Shared test fixtures for pytest.

Provides a controllable clock, a static price oracle, in-memory stores and a
fully wired Platform, plus SQLAlchemy engine mocks for the PostgreSQL stores.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from unittest.mock import Mock

import pytest

from core.config import EngineConfig
from core.market_data.oracle import StaticPriceOracle
from core.platform import Platform
from core.storage.memory_stores import MemoryStores
from core.types import LedgerEvent

START = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

# Default market: BTC sells for ₹90,00,000 and buys for ₹92,00,000.
BUY_RATE = 9_200_000
SELL_RATE = 9_000_000


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class InterleavingStores(MemoryStores):
    """MemoryStores that can run another writer's work just before a write lands.

    Two Platforms over one instance behave like two processes sharing a
    database: each has its own user locks.
    """

    def __init__(self) -> None:
        super().__init__()
        self.before_write: dict[str, Callable[[], Any]] = {}

    def _interleave(self, name: str) -> None:
        action = self.before_write.pop(name, None)
        if action is not None:
            action()

    def commit_deltas(self, **kwargs: Any) -> LedgerEvent:
        self._interleave("commit_deltas")
        return super().commit_deltas(**kwargs)

    def update_loan(self, **kwargs: Any) -> bool:
        self._interleave("update_loan")
        return super().update_loan(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def oracle(clock: FakeClock) -> StaticPriceOracle:
    return StaticPriceOracle(buy_rate=BUY_RATE, sell_rate=SELL_RATE, btc_usd=102_273, clock=clock)


@pytest.fixture
def stores() -> MemoryStores:
    return MemoryStores()


@pytest.fixture
def interleaving_stores() -> InterleavingStores:
    return InterleavingStores()


@pytest.fixture
def platform(stores: MemoryStores, oracle: StaticPriceOracle, config: EngineConfig, clock: FakeClock) -> Platform:
    return Platform(stores=stores, oracle=oracle, config=config, clock=clock)


@pytest.fixture
def make_platform(oracle: StaticPriceOracle, config: EngineConfig, clock: FakeClock) -> Callable[[MemoryStores], Platform]:
    """Build another Platform (own ledger and locks) over the given stores."""

    def _make(stores: MemoryStores) -> Platform:
        return Platform(stores=stores, oracle=oracle, config=config, clock=clock)

    return _make


@pytest.fixture
def fund(platform: Platform):
    """Deposit INR and/or satoshis for a user."""

    def _fund(user_id: int, *, inr: int = 0, btc: int = 0) -> None:
        if inr:
            platform.deposit(user_id, "INR", inr)
        if btc:
            platform.deposit(user_id, "BTC", btc)

    return _fund


@pytest.fixture
def mock_db_engine() -> Mock:
    """Mock SQLAlchemy engine for testing database operations."""
    mock_engine = Mock()
    mock_conn = Mock()
    mock_result = Mock()
    mock_result.rowcount = 1
    mock_result.fetchone.return_value = None
    mock_result.fetchall.return_value = []
    mock_conn.execute.return_value = mock_result
    mock_engine.begin.return_value.__enter__ = Mock(return_value=mock_conn)
    mock_engine.begin.return_value.__exit__ = Mock(return_value=False)
    return mock_engine


@pytest.fixture
def mock_postgres_stores(mock_db_engine: Mock) -> Any:
    """PostgresStores with a mocked database engine and `text`."""
    from unittest.mock import patch

    from core.storage.postgres.config import PostgresConfig
    from core.storage.postgres.stores import PostgresStores

    stores = PostgresStores(config=PostgresConfig(database_url="postgresql://fake"))

    with patch.object(stores, "_get_engine", return_value=mock_db_engine), patch.object(
        stores, "_require_sqlalchemy", return_value=(Mock(), Mock(side_effect=lambda sql: sql))
    ):
        yield stores
