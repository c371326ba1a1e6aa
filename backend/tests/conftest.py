"""
Shared test configuration.

Environment is pinned before any application module is imported: the
database and data directory live in a temp dir, rate limiting is off and
broker credentials are cleared so every gateway resolves to paper mode.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import List, Optional

_TEST_DATA_DIR = tempfile.mkdtemp(prefix="signaldesk-tests-")
os.environ["SIGNALDESK_DATA_DIR"] = _TEST_DATA_DIR
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DATA_DIR, 'signaldesk-test.db')}"
os.environ["SIGNALDESK_RATE_LIMIT_ENABLED"] = "false"
for _key in ("ALPACA_API_KEY", "ALPACA_SECRET_KEY", "GEMINI_API_KEY", "GEMINI_API_SECRET"):
    os.environ.pop(_key, None)

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from engine.errors import DataUnavailableError  # noqa: E402
from engine.models import PortfolioMetrics, PriceBar, TradeRecord, TradingSignal  # noqa: E402
from services.broker import (  # noqa: E402
    AccountSnapshot,
    ExecutionGateway,
    OrderFill,
    OrderSpec,
    OrderStatus,
)
from services.market_data import MarketDataSource, Quote  # noqa: E402
from services.portfolio import PortfolioStore  # noqa: E402
from storage.database import Base  # noqa: E402

BASE_TIME = datetime(2024, 1, 2, tzinfo=timezone.utc)


def make_bars(closes, volume: float = 1000.0, spread: float = 0.01) -> List[PriceBar]:
    """Daily bars around the given closes, oldest first."""
    return [
        PriceBar(
            timestamp=BASE_TIME + timedelta(days=index),
            open=close,
            high=close * (1 + spread),
            low=close * (1 - spread),
            close=close,
            volume=volume,
        )
        for index, close in enumerate(closes)
    ]


def make_metrics(**overrides) -> PortfolioMetrics:
    values = dict(
        total_value=100000.0,
        total_cash=100000.0,
        total_invested=0.0,
        unrealized_pnl=0.0,
        realized_pnl=0.0,
        day_change=0.0,
        day_change_percent=0.0,
        open_positions=0,
        today_trades=0,
    )
    values.update(overrides)
    return PortfolioMetrics(**values)


class FakeStore(PortfolioStore):
    """In-memory portfolio store recording everything the engine writes."""

    def __init__(self, metrics: Optional[PortfolioMetrics] = None, signals=None):
        self.metrics = metrics or make_metrics()
        self.signals: List[TradingSignal] = list(signals or [])
        self.trades: List[TradeRecord] = []
        self.recomputed: List[str] = []
        self.metrics_error: Optional[Exception] = None
        self.append_error: Optional[Exception] = None
        self.recompute_error: Optional[Exception] = None
        self.signals_error: Optional[Exception] = None
        self.signal_delay = 0.0
        self.active_sweeps = 0
        self.max_active_sweeps = 0

    async def get_metrics(self, user_id, portfolio_id):
        if self.metrics_error is not None:
            raise self.metrics_error
        return self.metrics

    async def append_trade(self, record):
        if self.append_error is not None:
            raise self.append_error
        self.trades.append(record)

    async def recompute_performance(self, portfolio_id):
        if self.recompute_error is not None:
            raise self.recompute_error
        self.recomputed.append(portfolio_id)

    async def get_recent_high_confidence_signals(self, window_hours, min_confidence):
        self.active_sweeps += 1
        self.max_active_sweeps = max(self.max_active_sweeps, self.active_sweeps)
        try:
            if self.signal_delay:
                await asyncio.sleep(self.signal_delay)
            if self.signals_error is not None:
                raise self.signals_error
            return list(self.signals)
        finally:
            self.active_sweeps -= 1


class RecordingGateway(ExecutionGateway):
    """Execution gateway double that records placed orders."""

    name = "recording"

    def __init__(
        self,
        account: Optional[AccountSnapshot] = None,
        configured: bool = True,
        status: OrderStatus = OrderStatus.FILLED,
        fill_price: Optional[float] = None,
        fees: float = 0.0,
        delay: float = 0.0,
        filled_quantity: Optional[float] = None,
    ):
        self.account = account or AccountSnapshot(
            status="ACTIVE", buying_power=1_000_000.0, cash=1_000_000.0, equity=1_000_000.0,
        )
        self.configured = configured
        self.status = status
        self.fill_price = fill_price
        self.fees = fees
        self.delay = delay
        self.filled_quantity = filled_quantity
        self.account_error: Optional[Exception] = None
        self.place_error: Optional[Exception] = None
        self.placed: List[OrderSpec] = []
        self.cancelled: List[str] = []
        self.cancel_error: Optional[Exception] = None

    def is_configured(self):
        return self.configured

    async def get_account(self):
        if self.account_error is not None:
            raise self.account_error
        return self.account

    async def place_order(self, spec):
        self.placed.append(spec)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.place_error is not None:
            raise self.place_error
        return OrderFill(
            order_id=f"order-{len(self.placed)}",
            status=self.status,
            filled_quantity=spec.quantity if self.filled_quantity is None else self.filled_quantity,
            filled_avg_price=self.fill_price if self.fill_price is not None else spec.limit_price,
            fees=self.fees,
        )

    async def cancel_order(self, order_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(order_id)


class StaticMarketData(MarketDataSource):
    """Market data double serving fixed bars and a fixed quote price."""

    def __init__(self, bars=None, price: Optional[float] = None, error: Optional[Exception] = None):
        self.bars = list(bars or [])
        self.price = price
        self.error = error

    async def get_historical_bars(self, symbol, timeframe="1Day", start=None, end=None, limit=None):
        if self.error is not None:
            raise self.error
        return list(self.bars)

    async def get_latest_quote(self, symbol):
        if self.error is not None:
            raise self.error
        if self.price is None:
            raise DataUnavailableError(f"No quote for {symbol}")
        return Quote(symbol=symbol, bid=self.price, ask=self.price, price=self.price, timestamp=BASE_TIME)


@pytest.fixture
def db_session():
    """In-memory SQLite session shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    engine.dispose()
