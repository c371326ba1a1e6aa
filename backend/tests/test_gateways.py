"""
Tests for execution gateways, market data adapters and the retry helper.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from alpaca.trading.enums import OrderStatus as AlpacaOrderStatus
from alpaca.trading.requests import LimitOrderRequest, MarketOrderRequest

from engine.errors import DataUnavailableError, GatewayError
from integrations.alpaca_broker import AlpacaGateway, AlpacaMarketData
from integrations.gemini_client import (
    SANDBOX_BASE_URL,
    GeminiClient,
    GeminiGateway,
    GeminiMarketData,
)
from integrations.retry import call_with_retry
from services.broker import (
    ExecutionOrderType,
    OrderFill,
    OrderSide,
    OrderSpec,
    OrderStatus,
    PaperGateway,
)


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _gemini(handler, sleep=None, api_key="key", api_secret="secret"):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=SANDBOX_BASE_URL)
    return GeminiClient(
        api_key=api_key,
        api_secret=api_secret,
        http_client=http_client,
        sleep=sleep or FakeSleep(),
    )


def _decoded_payload(request):
    return json.loads(base64.b64decode(request.headers["X-GEMINI-PAYLOAD"]))


BTC_LIMIT = OrderSpec(
    symbol="BTCUSD",
    side=OrderSide.BUY,
    quantity=0.5,
    order_type=ExecutionOrderType.LIMIT,
    limit_price=60000.0,
)


# Retry helper

@pytest.mark.asyncio
async def test_retry_backs_off_exponentially():
    sleep = FakeSleep()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise GatewayError("unavailable", status_code=503)
        return "ok"

    assert await call_with_retry(flaky, "flaky call", sleep=sleep) == "ok"
    assert len(attempts) == 3
    assert sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_does_not_repeat_client_errors():
    sleep = FakeSleep()
    attempts = []

    async def bad_request():
        attempts.append(1)
        raise GatewayError("bad request", status_code=400)

    with pytest.raises(GatewayError, match="bad request"):
        await call_with_retry(bad_request, "bad call", sleep=sleep)
    assert len(attempts) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_attempts():
    sleep = FakeSleep()
    attempts = []

    async def down():
        attempts.append(1)
        raise GatewayError("down")

    with pytest.raises(GatewayError, match="down"):
        await call_with_retry(down, "down call", max_attempts=2, backoff_seconds=0.5, sleep=sleep)
    assert len(attempts) == 2
    assert sleep.calls == [0.5]


# Gemini client

def test_gemini_sign_headers():
    client = _gemini(lambda request: httpx.Response(200, json={}))
    payload = {"request": "/v1/balances", "nonce": "1"}
    headers = client.sign(payload)

    encoded = base64.b64encode(json.dumps(payload).encode("utf-8"))
    expected = hmac.new(b"secret", encoded, hashlib.sha384).hexdigest()
    assert headers["X-GEMINI-APIKEY"] == "key"
    assert headers["X-GEMINI-PAYLOAD"] == encoded.decode("ascii")
    assert headers["X-GEMINI-SIGNATURE"] == expected
    assert headers["Content-Length"] == "0"


def test_gemini_sign_requires_credentials():
    client = _gemini(lambda request: httpx.Response(200, json={}), api_key=None, api_secret=None)
    assert client.has_credentials is False
    with pytest.raises(GatewayError, match="credentials not configured"):
        client.sign({"request": "/v1/balances"})


def test_gemini_nonce_is_monotonic():
    client = _gemini(lambda request: httpx.Response(200, json={}))
    first = int(client._next_nonce())
    second = int(client._next_nonce())
    assert second > first


@pytest.mark.asyncio
async def test_gemini_account_from_balances():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[
            {"currency": "BTC", "amount": "1.0", "available": "1.0"},
            {"currency": "USD", "amount": "2500.00", "available": "2000.00"},
        ])

    gateway = GeminiGateway(_gemini(handler))
    account = await gateway.get_account()

    assert account.is_active
    assert account.buying_power == 2000.0
    assert account.equity == 2500.0
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/v1/balances"
    assert _decoded_payload(seen[0])["request"] == "/v1/balances"


@pytest.mark.asyncio
async def test_gemini_balances_retry_server_errors():
    sleep = FakeSleep()
    responses = [httpx.Response(500, text="busy"), httpx.Response(502, text="busy"),
                 httpx.Response(200, json=[])]

    def handler(request):
        return responses.pop(0)

    client = _gemini(handler, sleep=sleep)
    assert await client.get_balances() == []
    assert sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_gemini_place_order_payload_and_fill():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            "order_id": "123",
            "original_amount": "0.5",
            "executed_amount": "0.5",
            "avg_execution_price": "60000.00",
            "is_cancelled": False,
            "timestampms": 1700000000000,
        })

    gateway = GeminiGateway(_gemini(handler))
    fill = await gateway.place_order(BTC_LIMIT)

    payload = _decoded_payload(seen[0])
    assert seen[0].url.path == "/v1/order/new"
    assert payload["symbol"] == "btcusd"
    assert payload["amount"] == "0.5"
    assert payload["price"] == "60000.00"
    assert payload["side"] == "buy"
    assert payload["type"] == "exchange limit"

    assert fill.order_id == "123"
    assert fill.status == OrderStatus.FILLED
    assert fill.filled_quantity == 0.5
    assert fill.filled_avg_price == 60000.0
    assert fill.fees == pytest.approx(75.0)
    assert fill.timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)


@pytest.mark.asyncio
async def test_gemini_order_submission_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="oops")

    gateway = GeminiGateway(_gemini(handler))
    with pytest.raises(GatewayError) as excinfo:
        await gateway.place_order(BTC_LIMIT)
    assert excinfo.value.status_code == 500
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_gemini_requires_limit_price():
    gateway = GeminiGateway(_gemini(lambda request: httpx.Response(200, json={})))
    spec = OrderSpec(symbol="BTCUSD", side=OrderSide.BUY, quantity=0.5)
    with pytest.raises(GatewayError) as excinfo:
        await gateway.place_order(spec)
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_gemini_cancel_order_payload():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"order_id": "123", "is_cancelled": True})

    await GeminiGateway(_gemini(handler)).cancel_order("123")

    assert seen[0].url.path == "/v1/order/cancel"
    payload = _decoded_payload(seen[0])
    assert payload["request"] == "/v1/order/cancel"
    assert payload["order_id"] == 123


@pytest.mark.asyncio
async def test_gemini_cancel_rejects_non_numeric_id():
    calls = []
    gateway = GeminiGateway(_gemini(lambda request: calls.append(request) or httpx.Response(200, json={})))
    with pytest.raises(GatewayError) as excinfo:
        await gateway.cancel_order("paper-1")
    assert excinfo.value.status_code == 400
    assert calls == []


@pytest.mark.asyncio
async def test_gemini_cancel_client_error_not_retried():
    sleep = FakeSleep()
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"reason": "OrderNotFound"})

    with pytest.raises(GatewayError) as excinfo:
        await GeminiGateway(_gemini(handler, sleep=sleep)).cancel_order("999")
    assert excinfo.value.status_code == 400
    assert len(calls) == 1
    assert sleep.calls == []


def test_gemini_map_partial_and_cancelled():
    partial = GeminiGateway._map_order(
        {"order_id": 9, "original_amount": "1.0", "executed_amount": "0.4",
         "avg_execution_price": "100", "fee": "0.1"},
        BTC_LIMIT,
    )
    assert partial.status == OrderStatus.PARTIALLY_FILLED
    assert partial.fees == 0.1

    cancelled = GeminiGateway._map_order(
        {"order_id": 10, "original_amount": "1.0", "executed_amount": "0", "is_cancelled": True},
        BTC_LIMIT,
    )
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.filled_avg_price is None

    resting = GeminiGateway._map_order({"order_id": 11, "original_amount": "1.0"}, BTC_LIMIT)
    assert resting.status == OrderStatus.NEW


# Gemini market data

@pytest.mark.asyncio
async def test_gemini_candles_sorted_oldest_first():
    def handler(request):
        assert request.url.path == "/v2/candles/btcusd/1day"
        return httpx.Response(200, json=[
            [1700172800000, 3, 4, 2, 3.5, 10],
            [1700086400000, 1, 2, 0.5, 1.5, 20],
        ])

    bars = await GeminiMarketData(_gemini(handler)).get_historical_bars("BTCUSD")
    assert [bar.close for bar in bars] == [1.5, 3.5]
    assert bars[0].timestamp < bars[1].timestamp


@pytest.mark.asyncio
async def test_gemini_unsupported_timeframe():
    market_data = GeminiMarketData(_gemini(lambda request: httpx.Response(200, json=[])))
    with pytest.raises(DataUnavailableError, match="Unsupported timeframe"):
        await market_data.get_historical_bars("BTCUSD", timeframe="1Week")


@pytest.mark.asyncio
async def test_gemini_ticker_prices():
    quotes = {
        "/v2/ticker/btcusd": {"close": "61000", "bid": "60990", "ask": "61010"},
        "/v2/ticker/ethusd": {"bid": "100", "ask": "102"},
    }
    market_data = GeminiMarketData(_gemini(lambda request: httpx.Response(200, json=quotes[request.url.path])))

    btc = await market_data.get_latest_quote("BTCUSD")
    assert btc.price == 61000.0
    eth = await market_data.get_latest_quote("ETHUSD")
    assert eth.price == 101.0


@pytest.mark.asyncio
async def test_gemini_missing_symbol_is_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, text="not found")

    with pytest.raises(DataUnavailableError):
        await GeminiMarketData(_gemini(handler)).get_latest_quote("NOPEUSD")
    assert len(calls) == 1


# Alpaca

def _alpaca_order(status=AlpacaOrderStatus.FILLED, filled_qty="10", filled_avg_price="101.5"):
    return SimpleNamespace(
        id="alpaca-1",
        status=status,
        filled_qty=filled_qty,
        filled_avg_price=filled_avg_price,
        filled_at=None,
        submitted_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
    )


def _alpaca_gateway(client):
    return AlpacaGateway("key", "secret", backoff_seconds=0, trading_client=client)


@pytest.mark.asyncio
async def test_alpaca_account():
    client = MagicMock()
    client.get_account.return_value = SimpleNamespace(
        status="ACTIVE", buying_power="5000", cash="5000", equity="10000",
        trading_blocked=False, account_blocked=False,
    )
    account = await _alpaca_gateway(client).get_account()
    assert account.is_active
    assert account.buying_power == 5000.0
    assert account.equity == 10000.0


@pytest.mark.asyncio
async def test_alpaca_account_retries_connection_errors():
    client = MagicMock()
    client.get_account.side_effect = [
        ConnectionError("reset"),
        SimpleNamespace(status="ACTIVE", buying_power="1", cash="1", equity="1",
                        trading_blocked=False, account_blocked=False),
    ]
    account = await _alpaca_gateway(client).get_account()
    assert account.cash == 1.0
    assert client.get_account.call_count == 2


@pytest.mark.asyncio
async def test_alpaca_market_order():
    client = MagicMock()
    client.submit_order.return_value = _alpaca_order()
    spec = OrderSpec(symbol="AAPL", side=OrderSide.BUY, quantity=10)

    fill = await _alpaca_gateway(client).place_order(spec)

    request = client.submit_order.call_args[0][0]
    assert isinstance(request, MarketOrderRequest)
    assert request.symbol == "AAPL"
    assert request.qty == 10
    assert fill.order_id == "alpaca-1"
    assert fill.status == OrderStatus.FILLED
    assert fill.filled_quantity == 10.0
    assert fill.filled_avg_price == 101.5


@pytest.mark.asyncio
async def test_alpaca_limit_order():
    client = MagicMock()
    client.submit_order.return_value = _alpaca_order(
        status=AlpacaOrderStatus.NEW, filled_qty=None, filled_avg_price=None,
    )
    spec = OrderSpec(symbol="AAPL", side=OrderSide.SELL, quantity=5,
                     order_type=ExecutionOrderType.LIMIT, limit_price=101.234)

    fill = await _alpaca_gateway(client).place_order(spec)

    request = client.submit_order.call_args[0][0]
    assert isinstance(request, LimitOrderRequest)
    assert request.limit_price == 101.23
    assert fill.status == OrderStatus.NEW
    assert fill.filled_quantity == 0.0
    assert fill.filled_avg_price is None


@pytest.mark.asyncio
async def test_alpaca_order_submission_not_retried():
    client = MagicMock()
    client.submit_order.side_effect = ConnectionError("reset")
    spec = OrderSpec(symbol="AAPL", side=OrderSide.BUY, quantity=1)

    with pytest.raises(GatewayError, match="Alpaca order submission"):
        await _alpaca_gateway(client).place_order(spec)
    assert client.submit_order.call_count == 1


@pytest.mark.asyncio
async def test_alpaca_cancel_order():
    client = MagicMock()
    await _alpaca_gateway(client).cancel_order("alpaca-1")
    client.cancel_order_by_id.assert_called_once_with("alpaca-1")


@pytest.mark.asyncio
async def test_alpaca_cancel_retries_connection_errors():
    client = MagicMock()
    client.cancel_order_by_id.side_effect = [ConnectionError("reset"), None]
    await _alpaca_gateway(client).cancel_order("alpaca-1")
    assert client.cancel_order_by_id.call_count == 2


def test_alpaca_unconfigured():
    gateway = AlpacaGateway(None, None)
    assert gateway.is_configured() is False
    with pytest.raises(GatewayError, match="credentials not configured"):
        gateway.client


@pytest.mark.asyncio
async def test_alpaca_quote_midpoint():
    data_client = MagicMock()
    data_client.get_stock_latest_quote.return_value = {
        "AAPL": SimpleNamespace(bid_price=100.0, ask_price=102.0, timestamp=None),
    }
    market_data = AlpacaMarketData("key", "secret", backoff_seconds=0, data_client=data_client)

    quote = await market_data.get_latest_quote("AAPL")
    assert quote.price == 101.0

    data_client.get_stock_latest_quote.return_value = {}
    with pytest.raises(DataUnavailableError):
        await market_data.get_latest_quote("AAPL")


@pytest.mark.asyncio
async def test_alpaca_bars_sorted():
    def bar(day, close):
        return SimpleNamespace(
            timestamp=datetime(2024, 1, day, tzinfo=timezone.utc),
            open=close, high=close, low=close, close=close, volume=100,
        )

    data_client = MagicMock()
    data_client.get_stock_bars.return_value = SimpleNamespace(data={"AAPL": [bar(3, 2.0), bar(2, 1.0)]})
    market_data = AlpacaMarketData("key", "secret", backoff_seconds=0, data_client=data_client)

    bars = await market_data.get_historical_bars("AAPL")
    assert [b.close for b in bars] == [1.0, 2.0]


# Paper gateway

@pytest.mark.asyncio
async def test_paper_fills_limit_and_market_orders():
    gateway = PaperGateway(starting_balance=10000.0, fee_rate=0.001)

    limit = await gateway.place_order(OrderSpec(
        symbol="AAPL", side=OrderSide.BUY, quantity=10,
        order_type=ExecutionOrderType.LIMIT, limit_price=50.0,
    ))
    assert limit.status == OrderStatus.FILLED
    assert limit.filled_avg_price == 50.0
    assert limit.fees == pytest.approx(0.5)
    assert gateway.balance == pytest.approx(10000.0 - 500.5)

    market = await gateway.place_order(OrderSpec(symbol="AAPL", side=OrderSide.SELL, quantity=1))
    assert market.status == OrderStatus.FILLED
    assert market.filled_avg_price > 0
    assert market.order_id == "paper-2"


@pytest.mark.asyncio
async def test_paper_cancel_open_order():
    gateway = PaperGateway()
    gateway.orders["paper-9"] = OrderFill(
        order_id="paper-9", status=OrderStatus.NEW, filled_quantity=0.0, filled_avg_price=None,
    )

    await gateway.cancel_order("paper-9")
    assert gateway.orders["paper-9"].status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_paper_cancel_unknown_or_filled_order():
    gateway = PaperGateway()
    with pytest.raises(GatewayError) as excinfo:
        await gateway.cancel_order("paper-404")
    assert excinfo.value.status_code == 404

    fill = await gateway.place_order(OrderSpec(
        symbol="AAPL", side=OrderSide.BUY, quantity=1,
        order_type=ExecutionOrderType.LIMIT, limit_price=50.0,
    ))
    with pytest.raises(GatewayError) as excinfo:
        await gateway.cancel_order(fill.order_id)
    assert excinfo.value.status_code == 422
    assert gateway.orders[fill.order_id].status == OrderStatus.FILLED


@pytest.mark.asyncio
async def test_validate_order_reports_every_error():
    gateway = PaperGateway()
    validation = await gateway.validate_order(OrderSpec(
        symbol="", side=OrderSide.BUY, quantity=0,
        order_type=ExecutionOrderType.LIMIT, limit_price=None,
    ))
    assert validation.valid is False
    assert validation.errors == (
        "Symbol is required",
        "Quantity must be positive",
        "Limit price must be positive",
    )

    ok = await gateway.validate_order(OrderSpec(symbol="AAPL", side=OrderSide.BUY, quantity=1))
    assert ok.valid is True
