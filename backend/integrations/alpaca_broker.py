"""
Alpaca Broker Integration.

Implements the ExecutionGateway and MarketDataSource interfaces for stocks on
Alpaca Markets. Supports both paper trading and live trading via API
credentials.

alpaca-py is synchronous, so every SDK call runs in a worker thread.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, TypeVar

from alpaca.common.exceptions import APIError
from alpaca.data.historical import StockHistoricalDataClient
from alpaca.data.requests import StockBarsRequest, StockLatestQuoteRequest
from alpaca.data.timeframe import TimeFrame
from alpaca.trading.client import TradingClient
from alpaca.trading.enums import (
    OrderSide as AlpacaOrderSide,
    OrderStatus as AlpacaOrderStatus,
    TimeInForce,
)
from alpaca.trading.requests import LimitOrderRequest, MarketOrderRequest

from engine.errors import DataUnavailableError, GatewayError
from engine.models import PriceBar, utc_now
from integrations.retry import call_with_retry
from services.broker import (
    AccountSnapshot,
    ExecutionGateway,
    ExecutionOrderType,
    OrderFill,
    OrderSide,
    OrderSpec,
    OrderStatus,
)
from services.market_data import MarketDataSource, Quote

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TIMEFRAMES = {
    "1Min": TimeFrame.Minute,
    "1Hour": TimeFrame.Hour,
    "1Day": TimeFrame.Day,
    "1Week": TimeFrame.Week,
}

_STATUS_MAP = {
    AlpacaOrderStatus.NEW: OrderStatus.NEW,
    AlpacaOrderStatus.PENDING_NEW: OrderStatus.PENDING,
    AlpacaOrderStatus.ACCEPTED: OrderStatus.PENDING,
    AlpacaOrderStatus.PARTIALLY_FILLED: OrderStatus.PARTIALLY_FILLED,
    AlpacaOrderStatus.FILLED: OrderStatus.FILLED,
    AlpacaOrderStatus.DONE_FOR_DAY: OrderStatus.FILLED,
    AlpacaOrderStatus.CANCELED: OrderStatus.CANCELLED,
    AlpacaOrderStatus.EXPIRED: OrderStatus.EXPIRED,
    AlpacaOrderStatus.REPLACED: OrderStatus.CANCELLED,
    AlpacaOrderStatus.REJECTED: OrderStatus.REJECTED,
    AlpacaOrderStatus.SUSPENDED: OrderStatus.REJECTED,
}


def _safe_optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


async def _run_sdk(call: Callable[[], T], description: str, error_cls=GatewayError) -> T:
    """Run a blocking SDK call off the event loop, mapping SDK errors to GatewayError."""
    try:
        return await asyncio.to_thread(call)
    except APIError as exc:
        raise error_cls(f"{description}: {exc}", status_code=getattr(exc, "status_code", None)) from exc
    except (OSError, RuntimeError, ValueError) as exc:
        raise error_cls(f"{description}: {exc}") from exc


class AlpacaGateway(ExecutionGateway):
    """
    Alpaca execution gateway for stocks.

    Configuration:
        - api_key: Alpaca API key
        - secret_key: Alpaca secret key
        - paper: Whether to use paper trading (default: True)
    """

    name = "alpaca"

    def __init__(
        self,
        api_key: Optional[str],
        secret_key: Optional[str],
        paper: bool = True,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        trading_client: Optional[TradingClient] = None,
    ):
        """
        Initialize Alpaca gateway.

        Args:
            api_key: Alpaca API key
            secret_key: Alpaca secret key
            paper: Use paper trading endpoint (default: True)
            max_attempts: Attempts per call for transient failures
            backoff_seconds: Delay before the first retry
            trading_client: Pre-built client (tests)
        """
        self.api_key = api_key
        self.secret_key = secret_key
        self.paper = paper
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._trading_client = trading_client

    def is_configured(self) -> bool:
        return bool(self.api_key) and bool(self.secret_key)

    @property
    def client(self) -> TradingClient:
        if self._trading_client is None:
            if not self.is_configured():
                raise GatewayError("Alpaca credentials not configured")
            self._trading_client = TradingClient(
                api_key=self.api_key,
                secret_key=self.secret_key,
                paper=self.paper,
            )
            logger.info("Alpaca trading client ready (%s)", "paper" if self.paper else "live")
        return self._trading_client

    async def _call(self, fn: Callable[[], T], description: str) -> T:
        return await call_with_retry(
            lambda: _run_sdk(fn, description),
            description,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
        )

    async def get_account(self) -> AccountSnapshot:
        client = self.client
        account = await self._call(client.get_account, "Alpaca account lookup")
        status = getattr(account.status, "value", account.status)
        return AccountSnapshot(
            status=str(status),
            buying_power=float(account.buying_power or 0.0),
            cash=float(account.cash or 0.0),
            equity=float(account.equity or 0.0),
            trading_blocked=bool(account.trading_blocked or account.account_blocked),
        )

    async def place_order(self, spec: OrderSpec) -> OrderFill:
        client = self.client
        side = AlpacaOrderSide.BUY if spec.side == OrderSide.BUY else AlpacaOrderSide.SELL

        if spec.order_type == ExecutionOrderType.MARKET:
            # Fractional quantities are accepted for market orders on eligible symbols.
            request = MarketOrderRequest(
                symbol=spec.symbol,
                qty=round(spec.quantity, 9),
                side=side,
                time_in_force=TimeInForce.DAY,
                client_order_id=spec.client_order_id,
            )
        else:
            request = LimitOrderRequest(
                symbol=spec.symbol,
                qty=spec.quantity,
                side=side,
                time_in_force=TimeInForce.DAY,
                limit_price=round(spec.limit_price, 2),
                client_order_id=spec.client_order_id,
            )

        # Order submission is not idempotent, so it is attempted once.
        order = await _run_sdk(lambda: client.submit_order(request), "Alpaca order submission")
        fill = self._map_alpaca_order(order)
        logger.info("Alpaca order %s for %s is %s", fill.order_id, spec.symbol, fill.status.value)
        return fill

    async def cancel_order(self, order_id: str) -> None:
        client = self.client
        await self._call(lambda: client.cancel_order_by_id(order_id), "Alpaca order cancel")
        logger.info("Cancelled order %s", order_id)

    @staticmethod
    def _map_alpaca_order(order) -> OrderFill:
        return OrderFill(
            order_id=str(order.id),
            status=_STATUS_MAP.get(order.status, OrderStatus.PENDING),
            filled_quantity=float(order.filled_qty) if order.filled_qty else 0.0,
            filled_avg_price=_safe_optional_float(order.filled_avg_price),
            timestamp=order.filled_at or order.submitted_at or utc_now(),
        )


class AlpacaMarketData(MarketDataSource):
    """Stock bars and quotes from the Alpaca data API."""

    def __init__(
        self,
        api_key: Optional[str],
        secret_key: Optional[str],
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        data_client: Optional[StockHistoricalDataClient] = None,
    ):
        self.api_key = api_key
        self.secret_key = secret_key
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._data_client = data_client

    @property
    def client(self) -> StockHistoricalDataClient:
        if self._data_client is None:
            if not (self.api_key and self.secret_key):
                raise DataUnavailableError("Alpaca credentials not configured")
            self._data_client = StockHistoricalDataClient(
                api_key=self.api_key,
                secret_key=self.secret_key,
            )
        return self._data_client

    async def _call(self, fn: Callable[[], T], description: str) -> T:
        return await call_with_retry(
            lambda: _run_sdk(fn, description, DataUnavailableError),
            description,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
        )

    async def get_historical_bars(
        self,
        symbol: str,
        timeframe: str = "1Day",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[PriceBar]:
        if timeframe not in _TIMEFRAMES:
            raise DataUnavailableError(f"Unsupported timeframe: {timeframe}", status_code=400)
        client = self.client
        request = StockBarsRequest(
            symbol_or_symbols=[symbol],
            timeframe=_TIMEFRAMES[timeframe],
            start=start or utc_now() - timedelta(days=100),
            end=end,
            limit=limit,
        )
        bars = await self._call(lambda: client.get_stock_bars(request), f"Alpaca bars for {symbol}")
        bar_data = bars.data if hasattr(bars, "data") else bars
        symbol_bars = bar_data.get(symbol, []) if isinstance(bar_data, dict) else []

        result = [
            PriceBar(
                timestamp=bar.timestamp,
                open=float(bar.open),
                high=float(bar.high),
                low=float(bar.low),
                close=float(bar.close),
                volume=float(bar.volume),
            )
            for bar in symbol_bars
        ]
        result.sort(key=lambda bar: bar.timestamp)
        return result

    async def get_latest_quote(self, symbol: str) -> Quote:
        client = self.client
        request = StockLatestQuoteRequest(symbol_or_symbols=symbol)
        quotes = await self._call(
            lambda: client.get_stock_latest_quote(request), f"Alpaca quote for {symbol}"
        )
        if symbol not in quotes:
            raise DataUnavailableError(f"No quote data available for {symbol}")

        quote = quotes[symbol]
        bid = float(quote.bid_price or 0.0)
        ask = float(quote.ask_price or 0.0)
        if bid > 0 and ask > 0:
            price = (bid + ask) / 2.0
        else:
            price = ask or bid
        return Quote(
            symbol=symbol,
            bid=bid,
            ask=ask,
            price=price,
            timestamp=quote.timestamp or utc_now(),
        )
