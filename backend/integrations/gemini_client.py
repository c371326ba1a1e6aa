"""
Gemini Exchange Integration.

HTTP client for the Gemini REST API plus the crypto ExecutionGateway and
MarketDataSource built on it.

Private endpoints are POSTs with an empty body; the request is carried in
base64 JSON in X-GEMINI-PAYLOAD and signed with HMAC-SHA384 of that payload.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import httpx

from engine.errors import DataUnavailableError, GatewayError
from engine.models import PriceBar, utc_now
from integrations.retry import call_with_retry
from services.broker import (
    AccountSnapshot,
    ExecutionGateway,
    OrderFill,
    OrderSpec,
    OrderStatus,
)
from services.market_data import MarketDataSource, Quote

logger = logging.getLogger(__name__)

LIVE_BASE_URL = "https://api.gemini.com"
SANDBOX_BASE_URL = "https://api.sandbox.gemini.com"

RATE_LIMIT_REQUESTS = 120
RATE_LIMIT_WINDOW_SECONDS = 60.0
ESTIMATED_FEE_RATE = 0.0025

_CANDLE_TIMEFRAMES = {
    "1Min": "1m",
    "5Min": "5m",
    "15Min": "15m",
    "30Min": "30m",
    "1Hour": "1hr",
    "6Hour": "6hr",
    "1Day": "1day",
}


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class GeminiClient:
    """
    Async Gemini REST client.

    Every endpoint is throttled to 120 requests per rolling minute, and
    transient failures are retried with exponential backoff.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        sandbox: bool = True,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize Gemini client.

        Args:
            api_key: Gemini API key
            api_secret: Gemini API secret
            sandbox: Use the sandbox exchange (default: True)
            timeout: Per-request timeout in seconds
            max_attempts: Attempts per call for transient failures
            backoff_seconds: Delay before the first retry
            http_client: Pre-built httpx client (tests)
            sleep: Awaitable sleep used for throttling and backoff
        """
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = SANDBOX_BASE_URL if sandbox else LIVE_BASE_URL
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._request_log: Dict[str, Deque[float]] = {}
        self._last_nonce = 0

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key) and bool(self.api_secret)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _throttle(self, bucket: str) -> None:
        now = time.monotonic()
        requests = self._request_log.setdefault(bucket, deque())
        while requests and now - requests[0] >= RATE_LIMIT_WINDOW_SECONDS:
            requests.popleft()
        if len(requests) >= RATE_LIMIT_REQUESTS:
            wait = RATE_LIMIT_WINDOW_SECONDS - (now - requests[0])
            logger.warning("Gemini %s rate limit reached; waiting %.1fs", bucket, wait)
            await self._sleep(wait)
            requests.popleft()
        requests.append(time.monotonic())

    def _next_nonce(self) -> str:
        nonce = max(int(time.time() * 1000), self._last_nonce + 1)
        self._last_nonce = nonce
        return str(nonce)

    def sign(self, payload: Dict[str, Any]) -> Dict[str, str]:
        """Build the authentication headers for a private request payload."""
        if not self.has_credentials:
            raise GatewayError("Gemini API credentials not configured", status_code=401)
        encoded = base64.b64encode(json.dumps(payload).encode("utf-8"))
        signature = hmac.new(self.api_secret.encode("utf-8"), encoded, hashlib.sha384).hexdigest()
        return {
            "Content-Type": "text/plain",
            "Content-Length": "0",
            "X-GEMINI-APIKEY": self.api_key,
            "X-GEMINI-PAYLOAD": encoded.decode("ascii"),
            "X-GEMINI-SIGNATURE": signature,
            "Cache-Control": "no-cache",
        }

    @staticmethod
    def _raise_for_status(response: httpx.Response, error_cls=GatewayError) -> None:
        if response.status_code >= 400:
            raise error_cls(
                f"Gemini API error: {response.status_code} {response.text}",
                status_code=response.status_code,
            )

    async def _public(self, path: str, bucket: str) -> Any:
        async def _once():
            await self._throttle(bucket)
            try:
                response = await self._http.get(path, headers={"Content-Type": "application/json"})
            except httpx.HTTPError as exc:
                raise DataUnavailableError(f"Gemini request failed: {exc}") from exc
            self._raise_for_status(response, DataUnavailableError)
            return response.json()

        return await call_with_retry(
            _once, f"Gemini GET {path}",
            max_attempts=self.max_attempts, backoff_seconds=self.backoff_seconds, sleep=self._sleep,
        )

    async def _private_once(self, path: str, bucket: str, params: Optional[Dict[str, Any]]) -> Any:
        await self._throttle(bucket)
        payload = {"request": path, "nonce": self._next_nonce(), **(params or {})}
        try:
            response = await self._http.post(path, headers=self.sign(payload))
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gemini request failed: {exc}") from exc
        self._raise_for_status(response)
        return response.json()

    async def _private(self, path: str, bucket: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await call_with_retry(
            lambda: self._private_once(path, bucket, params), f"Gemini POST {path}",
            max_attempts=self.max_attempts, backoff_seconds=self.backoff_seconds, sleep=self._sleep,
        )

    # Public market data

    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        return await self._public(f"/v2/ticker/{symbol.lower()}", "ticker")

    async def get_candles(self, symbol: str, timeframe: str = "1day") -> List[List[Any]]:
        return await self._public(f"/v2/candles/{symbol.lower()}/{timeframe}", "candles")

    # Private account and orders

    async def get_balances(self) -> List[Dict[str, Any]]:
        return await self._private("/v1/balances", "balances")

    async def place_order(self, symbol: str, amount: float, price: float, side: str) -> Dict[str, Any]:
        """Submit an exchange limit order. Not retried: submission is not idempotent."""
        return await self._private_once("/v1/order/new", "orders", {
            "symbol": symbol.lower(),
            "amount": f"{amount:.8f}".rstrip("0").rstrip("."),
            "price": f"{price:.2f}",
            "side": side,
            "type": "exchange limit",
        })

    async def cancel_order(self, order_id: str) -> Dict[str, Any]:
        return await self._private("/v1/order/cancel", "orders", {"order_id": int(order_id)})


class GeminiGateway(ExecutionGateway):
    """Crypto execution gateway on the Gemini exchange (limit orders only)."""

    name = "gemini"

    def __init__(self, client: GeminiClient):
        self.client = client

    def is_configured(self) -> bool:
        return self.client.has_credentials

    async def get_account(self) -> AccountSnapshot:
        balances = await self.client.get_balances()
        usd = next((item for item in balances if str(item.get("currency", "")).upper() == "USD"), {})
        available = _to_float(usd.get("available"))
        return AccountSnapshot(
            status="ACTIVE",
            buying_power=available,
            cash=available,
            equity=_to_float(usd.get("amount")),
        )

    async def place_order(self, spec: OrderSpec) -> OrderFill:
        if spec.limit_price is None:
            raise GatewayError("Gemini orders require a limit price", status_code=400)
        data = await self.client.place_order(spec.symbol, spec.quantity, spec.limit_price, spec.side.value)
        fill = self._map_order(data, spec)
        logger.info("Gemini order %s for %s is %s", fill.order_id, spec.symbol, fill.status.value)
        return fill

    async def cancel_order(self, order_id: str) -> None:
        if not order_id.isdigit():
            raise GatewayError(f"Invalid Gemini order id {order_id}", status_code=400)
        await self.client.cancel_order(order_id)
        logger.info("Cancelled order %s", order_id)

    @staticmethod
    def _map_order(data: Dict[str, Any], spec: OrderSpec) -> OrderFill:
        amount = _to_float(data.get("original_amount") or data.get("amount"), spec.quantity)
        executed = _to_float(data.get("executed_amount"))
        avg_price = _to_float(data.get("avg_execution_price")) or None

        if data.get("is_cancelled"):
            status = OrderStatus.CANCELLED
        elif executed > 0 and executed >= amount:
            status = OrderStatus.FILLED
        elif executed > 0:
            status = OrderStatus.PARTIALLY_FILLED
        else:
            status = OrderStatus.NEW

        fee = data.get("fee")
        if fee is None:
            notional = (executed or spec.quantity) * (avg_price or spec.limit_price or 0.0)
            fees = round(notional * ESTIMATED_FEE_RATE, 8)
        else:
            fees = _to_float(fee)

        timestamp_ms = data.get("timestampms")
        timestamp = (
            datetime.fromtimestamp(int(timestamp_ms) / 1000, tz=timezone.utc)
            if timestamp_ms else utc_now()
        )
        return OrderFill(
            order_id=str(data.get("order_id", "")),
            status=status,
            filled_quantity=executed,
            filled_avg_price=avg_price,
            timestamp=timestamp,
            fees=fees,
        )


class GeminiMarketData(MarketDataSource):
    """Crypto candles and tickers from Gemini's public API."""

    def __init__(self, client: GeminiClient):
        self.client = client

    async def get_historical_bars(
        self,
        symbol: str,
        timeframe: str = "1Day",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[PriceBar]:
        if timeframe not in _CANDLE_TIMEFRAMES:
            raise DataUnavailableError(f"Unsupported timeframe: {timeframe}", status_code=400)
        candles = await self.client.get_candles(symbol, _CANDLE_TIMEFRAMES[timeframe])

        bars = []
        for candle in candles:
            timestamp = datetime.fromtimestamp(int(candle[0]) / 1000, tz=timezone.utc)
            if start is not None and timestamp < start:
                continue
            if end is not None and timestamp > end:
                continue
            bars.append(PriceBar(
                timestamp=timestamp,
                open=_to_float(candle[1]),
                high=_to_float(candle[2]),
                low=_to_float(candle[3]),
                close=_to_float(candle[4]),
                volume=_to_float(candle[5]),
            ))
        # Gemini returns newest first.
        bars.sort(key=lambda bar: bar.timestamp)
        if limit is not None and limit > 0:
            bars = bars[-limit:]
        return bars

    async def get_latest_quote(self, symbol: str) -> Quote:
        data = await self.client.get_ticker(symbol)
        bid = _to_float(data.get("bid"))
        ask = _to_float(data.get("ask"))
        price = _to_float(data.get("close"))
        if price <= 0 and bid > 0 and ask > 0:
            price = (bid + ask) / 2.0
        if price <= 0:
            raise DataUnavailableError(f"No ticker price available for {symbol}")
        return Quote(symbol=symbol.upper(), bid=bid, ask=ask, price=price, timestamp=utc_now())
