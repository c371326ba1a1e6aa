"""
Market Data Source Interface.
Abstract interface for OHLCV history and latest-quote providers.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from engine.errors import DataUnavailableError
from engine.models import PriceBar, utc_now


@dataclass(frozen=True)
class Quote:
    """Latest quote or ticker snapshot."""

    symbol: str
    bid: float
    ask: float
    price: float
    timestamp: datetime


class MarketDataSource(ABC):
    """
    Abstract market-data source.

    Implementations raise DataUnavailableError on network, auth or rate-limit
    failures; callers treat that as insufficient data.
    """

    @abstractmethod
    async def get_historical_bars(
        self,
        symbol: str,
        timeframe: str = "1Day",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[PriceBar]:
        """
        Get OHLCV bars in ascending timestamp order.

        Args:
            symbol: Ticker or pair
            timeframe: Bar interval, e.g. "1Day", "1Hour"
            start: Inclusive start time
            end: Inclusive end time
            limit: Maximum bars to return (most recent)
        """
        pass

    @abstractmethod
    async def get_latest_quote(self, symbol: str) -> Quote:
        """Get the latest bid/ask and reference price for a symbol."""
        pass


class PaperMarketData(MarketDataSource):
    """
    Deterministic simulated market data.

    Prices follow a smooth per-symbol wave around a baseline derived from the
    ticker, so signals computed from it are reproducible.
    """

    # Stable reference prices for well-known symbols.
    STATIC_PRICES: Dict[str, float] = {
        "AAPL": 100.0,
        "MSFT": 300.0,
        "BTCUSD": 60000.0,
        "ETHUSD": 3000.0,
    }

    def __init__(self, now: Optional[datetime] = None):
        self._now = now

    def _current_time(self) -> datetime:
        return self._now or utc_now()

    @classmethod
    def baseline_price(cls, symbol: str) -> float:
        symbol = symbol.upper()
        if symbol in cls.STATIC_PRICES:
            return cls.STATIC_PRICES[symbol]
        seed = sum((idx + 1) * ord(ch) for idx, ch in enumerate(symbol))
        # 25..425 baseline.
        return float((seed % 400) + 25)

    async def get_historical_bars(
        self,
        symbol: str,
        timeframe: str = "1Day",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[PriceBar]:
        if not symbol:
            raise DataUnavailableError("Symbol is required", status_code=400)
        end = end or self._current_time()
        start = start or end - timedelta(days=100)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)

        base = self.baseline_price(symbol)
        phase = sum(ord(ch) for ch in symbol.upper()) % 17
        bars: List[PriceBar] = []
        day = start.replace(hour=0, minute=0, second=0, microsecond=0)
        index = 0
        while day <= end:
            wave = math.sin((index + phase) / 6.0) * 0.04 + math.sin((index + phase) / 17.0) * 0.06
            close = round(base * (1.0 + wave), 4)
            spread = close * 0.01
            bars.append(PriceBar(
                timestamp=day,
                open=round(close - spread / 2, 4),
                high=round(close + spread, 4),
                low=round(close - spread, 4),
                close=close,
                volume=float(200_000 + ((index * 7919 + phase * 104729) % 800_000)),
            ))
            day += timedelta(days=1)
            index += 1

        if limit is not None and limit > 0:
            bars = bars[-limit:]
        return bars

    async def get_latest_quote(self, symbol: str) -> Quote:
        bars = await self.get_historical_bars(symbol, limit=1)
        price = bars[-1].close if bars else self.baseline_price(symbol)
        spread = max(0.01, round(price * 0.0005, 2))
        return Quote(
            symbol=symbol.upper(),
            bid=round(price - spread, 2),
            ask=round(price + spread, 2),
            price=price,
            timestamp=self._current_time(),
        )
