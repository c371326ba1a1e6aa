"""
Tests for the risk gates applied before order dispatch.
"""

import pytest

from conftest import make_metrics
from config.risk_profiles import RiskManagementParams
from engine.models import TradeAction
from engine.risk_manager import RiskManager


@pytest.fixture
def risk_manager():
    return RiskManager(RiskManagementParams())


def test_valid_buy(risk_manager):
    ok, reason = risk_manager.validate_order(TradeAction.BUY, 10, 100.0, make_metrics())
    assert ok is True
    assert reason is None


def test_position_at_limit_is_allowed(risk_manager):
    # 100 * 100 = exactly 10% of 100k
    ok, _ = risk_manager.validate_order(TradeAction.BUY, 100, 100.0, make_metrics())
    assert ok is True


def test_position_too_large(risk_manager):
    ok, reason = risk_manager.validate_order(TradeAction.BUY, 200, 100.0, make_metrics())
    assert ok is False
    assert reason == "Position size too large (20.00% > 10%)"


def test_daily_loss_halts_buys_and_sells(risk_manager):
    metrics = make_metrics(day_change=-5000.0, day_change_percent=-5.0)
    for action in (TradeAction.BUY, TradeAction.SELL):
        ok, reason = risk_manager.validate_order(action, 1, 100.0, metrics)
        assert ok is False
        assert reason == "Daily loss limit exceeded (-5.00%)"


def test_max_open_positions_blocks_buys_only(risk_manager):
    metrics = make_metrics(open_positions=10)
    ok, reason = risk_manager.validate_order(TradeAction.BUY, 1, 100.0, metrics)
    assert ok is False
    assert reason == "Maximum open positions reached (10)"

    ok, reason = risk_manager.validate_order(TradeAction.SELL, 1, 100.0, metrics)
    assert ok is True


@pytest.mark.parametrize("total_value", [0.0, -10.0, float("nan"), float("inf")])
def test_unusable_portfolio_value(risk_manager, total_value):
    ok, reason = risk_manager.validate_order(
        TradeAction.BUY, 1, 100.0, make_metrics(total_value=total_value),
    )
    assert ok is False
    assert reason == "Portfolio value unavailable"


def test_custom_limits():
    manager = RiskManager(RiskManagementParams(max_position_size=50.0, max_open_positions=2))
    ok, _ = manager.validate_order(TradeAction.BUY, 400, 100.0, make_metrics())
    assert ok is True
    ok, reason = manager.validate_order(TradeAction.BUY, 1, 100.0, make_metrics(open_positions=2))
    assert reason == "Maximum open positions reached (2)"


def test_position_size_percent():
    assert RiskManager.position_size_percent(10, 50.0, 1000.0) == pytest.approx(50.0)
    assert RiskManager.position_size_percent(10, 50.0, 0.0) is None
