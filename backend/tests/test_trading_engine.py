"""
Tests for the trading engine: pre-trade gates, dispatch, post-commit and
automated sweeps.
"""

import asyncio

import pytest

from conftest import BASE_TIME, FakeStore, RecordingGateway, StaticMarketData, make_metrics
from engine.errors import GatewayError
from engine.models import (
    AssetType,
    OrderType,
    SignalAction,
    TradeAction,
    TradeParams,
    TradeState,
    TradingSignal,
)
from engine.trading_engine import TradingEngine
from services.broker import AccountSnapshot, ExecutionOrderType, OrderStatus


def _params(**overrides):
    values = dict(
        symbol="AAPL",
        asset_type=AssetType.STOCK,
        action=TradeAction.BUY,
        quantity=10,
        user_id="user-1",
        portfolio_id="pf-1",
        order_type=OrderType.LIMIT,
        price=100.0,
    )
    values.update(overrides)
    return TradeParams(**values)


def _signal(symbol, confidence, action=SignalAction.BUY, price=100.0, target=None,
            asset_type=AssetType.STOCK):
    return TradingSignal(
        id=f"{symbol}_{asset_type.value}_{int(confidence * 100)}",
        symbol=symbol,
        asset_type=asset_type,
        action=action,
        confidence=confidence,
        price=price,
        timestamp=BASE_TIME,
        target_price=target,
        stop_loss=price * 0.98,
        take_profit=target,
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def stock_gateway():
    return RecordingGateway(fill_price=100.5, fees=1.0)


@pytest.fixture
def crypto_gateway():
    return RecordingGateway()


@pytest.fixture
def engine(store, stock_gateway, crypto_gateway):
    return TradingEngine(
        portfolio_store=store,
        stock_gateway=stock_gateway,
        crypto_gateway=crypto_gateway,
        market_data={
            AssetType.STOCK: StaticMarketData(price=100.0),
            AssetType.CRYPTO: StaticMarketData(price=60000.0),
        },
    )


# ============================================================================
# Successful execution
# ============================================================================

@pytest.mark.asyncio
async def test_successful_trade_is_reconciled(engine, store, stock_gateway):
    result = await engine.execute_trade(_params(signal_id="sig-1", stop_loss=95.0))

    assert result.success is True
    assert result.state == TradeState.RECONCILED
    assert result.reconciled is True
    assert result.order_id == "order-1"
    assert result.executed_price == 100.5
    assert result.executed_quantity == 10
    assert result.fees == 1.0
    assert result.warnings == ()

    assert len(store.trades) == 1
    record = store.trades[0]
    assert record.external_order_id == "order-1"
    assert record.signal_id == "sig-1"
    assert record.stop_loss == 95.0
    assert record.price == 100.5
    assert store.recomputed == ["pf-1"]


@pytest.mark.asyncio
async def test_market_order_priced_from_market_data(engine, stock_gateway):
    result = await engine.execute_trade(_params(order_type=OrderType.MARKET, price=None))

    assert result.success is True
    spec = stock_gateway.placed[0]
    assert spec.order_type == ExecutionOrderType.MARKET
    assert spec.limit_price is None


@pytest.mark.asyncio
async def test_stop_loss_order_sent_as_limit(engine, stock_gateway):
    await engine.execute_trade(_params(order_type=OrderType.STOP_LOSS, price=97.0))
    spec = stock_gateway.placed[0]
    assert spec.order_type == ExecutionOrderType.LIMIT
    assert spec.limit_price == 97.0


@pytest.mark.asyncio
async def test_crypto_market_order_becomes_limit_at_quote(engine, crypto_gateway):
    result = await engine.execute_trade(_params(
        symbol="BTCUSD", asset_type=AssetType.CRYPTO, quantity=0.01,
        order_type=OrderType.MARKET, price=None,
    ))

    assert result.success is True
    spec = crypto_gateway.placed[0]
    assert spec.order_type == ExecutionOrderType.LIMIT
    assert spec.limit_price == 60000.0
    assert result.executed_price == 60000.0


@pytest.mark.asyncio
async def test_raw_string_enums_are_accepted(engine, stock_gateway):
    result = await engine.execute_trade(_params(asset_type="stock", action="sell", order_type="limit"))
    assert result.success is True
    assert stock_gateway.placed[0].side.value == "sell"


@pytest.mark.asyncio
async def test_sell_skips_buying_power_check(store, crypto_gateway):
    poor = RecordingGateway(account=AccountSnapshot(
        status="ACTIVE", buying_power=0.0, cash=0.0, equity=0.0,
    ))
    engine = TradingEngine(store, poor, crypto_gateway)
    result = await engine.execute_trade(_params(action=TradeAction.SELL))
    assert result.success is True


# ============================================================================
# Pre-trade rejections never reach the gateway
# ============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"quantity": 0}, "Quantity must be positive"),
        ({"quantity": -5}, "Quantity must be positive"),
        ({"quantity": float("nan")}, "Quantity must be positive"),
        ({"symbol": "  "}, "Symbol is required"),
        ({"action": "hold"}, "Action must be buy or sell"),
        ({"asset_type": "bond"}, "Asset type must be stock or crypto"),
        ({"order_type": "trailing"}, "Order type must be market, limit, stop_loss or take_profit"),
        ({"price": None}, "Price is required for limit orders"),
        ({"price": -1.0}, "Price must be positive"),
        ({"portfolio_id": ""}, "User and portfolio are required"),
    ],
)
async def test_structural_validation(engine, stock_gateway, overrides, message):
    result = await engine.execute_trade(_params(**overrides))

    assert result.success is False
    assert result.state == TradeState.REJECTED
    assert result.error.startswith("Trade validation failed: ")
    assert message in result.error
    assert stock_gateway.placed == []


@pytest.mark.asyncio
async def test_inactive_account(store, crypto_gateway):
    gateway = RecordingGateway(account=AccountSnapshot(
        status="ACCOUNT_CLOSED", buying_power=1e6, cash=1e6, equity=1e6,
    ))
    result = await TradingEngine(store, gateway, crypto_gateway).execute_trade(_params())

    assert result.error == "Failed to validate account status: Account not active"
    assert gateway.placed == []


@pytest.mark.asyncio
async def test_blocked_account(store, crypto_gateway):
    gateway = RecordingGateway(account=AccountSnapshot(
        status="ACTIVE", buying_power=1e6, cash=1e6, equity=1e6, trading_blocked=True,
    ))
    result = await TradingEngine(store, gateway, crypto_gateway).execute_trade(_params())
    assert result.error == "Failed to validate account status: Account not active"


@pytest.mark.asyncio
async def test_account_lookup_failure(engine, stock_gateway):
    stock_gateway.account_error = GatewayError("connection reset")
    result = await engine.execute_trade(_params())

    assert result.state == TradeState.REJECTED
    assert result.error == "Failed to validate account status: connection reset"
    assert stock_gateway.placed == []


@pytest.mark.asyncio
async def test_crypto_not_configured(store, stock_gateway):
    crypto = RecordingGateway(configured=False)
    engine = TradingEngine(store, stock_gateway, crypto)
    result = await engine.execute_trade(_params(symbol="BTCUSD", asset_type=AssetType.CRYPTO))

    assert result.error == "Failed to validate account status: Crypto trading not configured"
    assert crypto.placed == []


@pytest.mark.asyncio
async def test_market_buy_without_price_source(store, stock_gateway, crypto_gateway):
    engine = TradingEngine(store, stock_gateway, crypto_gateway)
    result = await engine.execute_trade(_params(order_type=OrderType.MARKET, price=None))

    assert result.error == "Trade validation failed: Unable to estimate price for market order"
    assert stock_gateway.placed == []


@pytest.mark.asyncio
async def test_market_buy_quote_failure(store, stock_gateway, crypto_gateway):
    engine = TradingEngine(
        store, stock_gateway, crypto_gateway,
        market_data={AssetType.STOCK: StaticMarketData(price=None)},
    )
    result = await engine.execute_trade(_params(order_type=OrderType.MARKET, price=None))
    assert result.error == "Trade validation failed: Unable to estimate price for market order"


@pytest.mark.asyncio
async def test_insufficient_buying_power(store, crypto_gateway):
    gateway = RecordingGateway(account=AccountSnapshot(
        status="ACTIVE", buying_power=500.0, cash=500.0, equity=500.0,
    ))
    result = await TradingEngine(store, gateway, crypto_gateway).execute_trade(_params())

    assert result.error == "Trade validation failed: Insufficient buying power for this trade"
    assert gateway.placed == []


@pytest.mark.asyncio
async def test_risk_violation(engine, store, stock_gateway):
    store.metrics = make_metrics(open_positions=10)
    result = await engine.execute_trade(_params())

    assert result.state == TradeState.REJECTED
    assert result.error == "Risk management violation: Maximum open positions reached (10)"
    assert stock_gateway.placed == []


@pytest.mark.asyncio
async def test_metrics_failure_is_risk_violation(engine, store, stock_gateway):
    store.metrics_error = RuntimeError("database locked")
    result = await engine.execute_trade(_params())

    assert result.error == "Risk management violation: Failed to evaluate risk management constraints"
    assert stock_gateway.placed == []


@pytest.mark.asyncio
async def test_gateway_validation_rejects_unpriced_crypto_sell(store, stock_gateway, crypto_gateway):
    engine = TradingEngine(store, stock_gateway, crypto_gateway)
    result = await engine.execute_trade(_params(
        symbol="ETHUSD", asset_type=AssetType.CRYPTO, action=TradeAction.SELL,
        order_type=OrderType.MARKET, price=None,
    ))

    assert result.state == TradeState.REJECTED
    assert result.error == "Order rejected by gateway: Limit price must be positive"
    assert crypto_gateway.placed == []


# ============================================================================
# Gateway failures
# ============================================================================

@pytest.mark.asyncio
async def test_gateway_timeout(store, crypto_gateway):
    slow = RecordingGateway(delay=1.0)
    engine = TradingEngine(store, slow, crypto_gateway)
    result = await engine.execute_trade(_params(), timeout=0.01)

    assert result.success is False
    assert result.state == TradeState.GATEWAY_ERROR
    assert result.error == "Gateway timeout after 0.01s"
    assert store.trades == []


@pytest.mark.asyncio
async def test_gateway_error(engine, store, stock_gateway):
    stock_gateway.place_error = GatewayError("insufficient qty", status_code=403)
    result = await engine.execute_trade(_params())

    assert result.state == TradeState.GATEWAY_ERROR
    assert result.error == "Stock trade execution failed: insufficient qty"
    assert store.trades == []


@pytest.mark.asyncio
async def test_unexpected_gateway_exception(engine, crypto_gateway):
    crypto_gateway.place_error = KeyError("order_id")
    result = await engine.execute_trade(_params(symbol="BTCUSD", asset_type=AssetType.CRYPTO, quantity=0.01))

    assert result.state == TradeState.GATEWAY_ERROR
    assert result.error.startswith("Crypto trade execution failed: ")


@pytest.mark.asyncio
async def test_broker_rejected_status(store, crypto_gateway):
    gateway = RecordingGateway(status=OrderStatus.REJECTED)
    result = await TradingEngine(store, gateway, crypto_gateway).execute_trade(_params())

    assert result.state == TradeState.GATEWAY_ERROR
    assert result.error == "Order rejected by broker"
    assert store.trades == []


@pytest.mark.asyncio
async def test_accepted_order_reports_broker_fill(store, crypto_gateway):
    gateway = RecordingGateway(status=OrderStatus.NEW, filled_quantity=0.0)
    result = await TradingEngine(store, gateway, crypto_gateway).execute_trade(_params())

    assert result.success is True
    assert result.executed_quantity == 0.0
    assert result.executed_price == 100.0
    record = store.trades[0]
    assert record.quantity == 0.0
    assert record.status == "new"


@pytest.mark.asyncio
async def test_partial_fill_reports_filled_quantity(store, crypto_gateway):
    gateway = RecordingGateway(status=OrderStatus.PARTIALLY_FILLED, filled_quantity=4.0, fill_price=99.5)
    result = await TradingEngine(store, gateway, crypto_gateway).execute_trade(_params())

    assert result.executed_quantity == 4.0
    assert result.executed_price == 99.5
    assert store.trades[0].status == "partially_filled"


# ============================================================================
# Post-commit
# ============================================================================

@pytest.mark.asyncio
async def test_trade_log_failure_leaves_trade_filled(engine, store):
    store.append_error = RuntimeError("disk full")
    result = await engine.execute_trade(_params())

    assert result.success is True
    assert result.state == TradeState.FILLED
    assert result.warnings == ("Trade log append failed: disk full",)
    # Recompute still runs after a failed append
    assert store.recomputed == ["pf-1"]


@pytest.mark.asyncio
async def test_recompute_failure_leaves_trade_filled(engine, store):
    store.recompute_error = RuntimeError("quote feed down")
    result = await engine.execute_trade(_params())

    assert result.success is True
    assert result.state == TradeState.FILLED
    assert result.warnings == ("Portfolio recompute failed: quote feed down",)
    assert len(store.trades) == 1


@pytest.mark.asyncio
async def test_get_portfolio_metrics_delegates(engine, store):
    store.metrics = make_metrics(total_value=1234.0)
    metrics = await engine.get_portfolio_metrics("user-1", "pf-1")
    assert metrics.total_value == 1234.0


# ============================================================================
# Automated trading
# ============================================================================

def test_automated_quantity_floors_whole_units(engine):
    signal = _signal("AAPL", 0.9, price=100.0, target=106.0)
    # 2% of 100k = 2000 / 106 = 18.87
    assert engine.automated_quantity(signal, 100000.0) == 18


def test_automated_quantity_crypto_eight_decimals(engine):
    signal = _signal("BTCUSD", 0.9, price=60000.0, target=61800.0, asset_type=AssetType.CRYPTO)
    assert engine.automated_quantity(signal, 100000.0) == pytest.approx(0.03236245)


def test_automated_quantity_falls_back_to_price(engine):
    signal = _signal("MSFT", 0.9, price=300.0)
    assert engine.automated_quantity(signal, 100000.0) == 6


@pytest.mark.asyncio
async def test_sweep_executes_buy_signals_by_confidence(engine, store, stock_gateway):
    store.signals = [
        _signal("MSFT", 0.75, price=300.0),
        _signal("AAPL", 0.9, price=100.0, target=106.0),
        _signal("TSLA", 0.95, action=SignalAction.SELL),
        _signal("NFLX", 0.6),
    ]
    summary = await engine.process_automated_trading("user-1", "pf-1")

    assert summary.success is True
    assert summary.processed == 2
    assert summary.executed == 2
    assert summary.failed == 0
    assert [outcome.symbol for outcome in summary.results] == ["AAPL", "MSFT"]
    assert [outcome.quantity for outcome in summary.results] == [18, 6]

    first, second = stock_gateway.placed
    assert first.order_type == ExecutionOrderType.LIMIT
    assert first.limit_price == 100.0
    assert second.limit_price == 300.0
    assert store.trades[0].signal_id == "AAPL_stock_90"


@pytest.mark.asyncio
async def test_sweep_continues_after_failure(engine, store):
    store.metrics = make_metrics(total_value=1000.0)
    store.signals = [
        _signal("BRK.A", 0.95, price=5000.0, target=5000.0),
        _signal("F", 0.8, price=10.0),
    ]
    summary = await engine.process_automated_trading("user-1", "pf-1")

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.executed == 1
    assert summary.results[0].error == "Position size too small"
    assert summary.results[1].success is True


@pytest.mark.asyncio
async def test_sweep_records_rejected_trades(engine, store):
    store.signals = [_signal("AAPL", 0.9)]
    store.metrics = make_metrics(open_positions=10)
    summary = await engine.process_automated_trading("user-1", "pf-1")

    assert summary.failed == 1
    assert summary.results[0].error.startswith("Risk management violation")


@pytest.mark.asyncio
async def test_sweep_startup_failure(engine, store):
    store.signals_error = RuntimeError("signal table missing")
    summary = await engine.process_automated_trading("user-1", "pf-1")

    assert summary.success is False
    assert summary.error == "Automated trading processing failed: signal table missing"
    assert summary.processed == 0


@pytest.mark.asyncio
async def test_concurrent_sweeps_on_one_portfolio_are_serialized(engine, store):
    store.signal_delay = 0.02
    await asyncio.gather(
        engine.process_automated_trading("user-1", "pf-1"),
        engine.process_automated_trading("user-1", "pf-1"),
    )
    assert store.max_active_sweeps == 1


@pytest.mark.asyncio
async def test_sweep_locks_shared_between_engines(store, stock_gateway, crypto_gateway):
    locks = {}
    first = TradingEngine(store, stock_gateway, crypto_gateway, sweep_locks=locks)
    second = TradingEngine(store, stock_gateway, crypto_gateway, sweep_locks=locks)
    store.signal_delay = 0.02

    await asyncio.gather(
        first.process_automated_trading("user-1", "pf-1"),
        second.process_automated_trading("user-1", "pf-1"),
    )
    assert store.max_active_sweeps == 1
    # Idle locks are dropped once both sweeps finish
    assert locks == {}


@pytest.mark.asyncio
async def test_batch_deduplicates_portfolios(engine, store):
    store.signal_delay = 0.02
    summaries = await engine.process_automated_trading_batch([
        ("user-1", "pf-1"), ("user-1", "pf-1"), ("user-2", "pf-2"),
    ])

    assert [summary.portfolio_id for summary in summaries] == ["pf-1", "pf-2"]
    # Different portfolios run concurrently
    assert store.max_active_sweeps == 2


@pytest.mark.asyncio
async def test_sweep_lock_released_after_failure(store, stock_gateway, crypto_gateway):
    locks = {}
    engine = TradingEngine(store, stock_gateway, crypto_gateway, sweep_locks=locks)
    store.signals_error = RuntimeError("signal table missing")

    await engine.process_automated_trading("user-1", "pf-1")
    await engine.process_automated_trading("user-1", "pf-2")
    assert locks == {}


# ============================================================================
# Order cancel
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_routes_to_asset_gateway(engine, stock_gateway, crypto_gateway):
    result = await engine.cancel_order("order-7", AssetType.CRYPTO)

    assert result.success is True
    assert result.order_id == "order-7"
    assert result.asset_type == AssetType.CRYPTO
    assert crypto_gateway.cancelled == ["order-7"]
    assert stock_gateway.cancelled == []


@pytest.mark.asyncio
async def test_cancel_gateway_error_carries_status(engine, stock_gateway):
    stock_gateway.cancel_error = GatewayError("order not found", status_code=404)
    result = await engine.cancel_order("order-7", AssetType.STOCK)

    assert result.success is False
    assert result.error == "Stock order cancel failed: order not found"
    assert result.status_code == 404


@pytest.mark.asyncio
async def test_cancel_unexpected_exception(engine, stock_gateway):
    stock_gateway.cancel_error = KeyError("id")
    result = await engine.cancel_order("order-7", "stock")

    assert result.success is False
    assert result.status_code is None
    assert result.error.startswith("Stock order cancel failed: ")


@pytest.mark.asyncio
async def test_cancel_requires_configured_gateway(store, stock_gateway):
    engine = TradingEngine(store, stock_gateway, RecordingGateway(configured=False))
    result = await engine.cancel_order("123", AssetType.CRYPTO)

    assert result.success is False
    assert result.error == "Crypto trading not configured"
    assert result.status_code == 400


@pytest.mark.asyncio
async def test_cancel_requires_order_id(engine, stock_gateway):
    result = await engine.cancel_order("  ", AssetType.STOCK)

    assert result.success is False
    assert result.status_code == 400
    assert stock_gateway.cancelled == []
