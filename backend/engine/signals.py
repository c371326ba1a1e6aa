"""
Signal Generator Module.

Six independent strategy evaluators vote on a direction; their weighted
confidences are folded into buy and sell scores that decide the final
signal, its confidence and its stop-loss/take-profit levels.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from config.risk_profiles import SignalRiskParameters, StrategyWeights
from engine.models import (
    AssetType,
    IndicatorSet,
    PriceBar,
    SignalAction,
    SignalValidation,
    StrategyResult,
    TradingSignal,
    utc_now,
)

logger = logging.getLogger(__name__)

StrategyFn = Callable[[IndicatorSet, Sequence[PriceBar]], StrategyResult]

MACD_HISTOGRAM_THRESHOLD = 0.001
BOLLINGER_SQUEEZE_PCT = 10.0
VOLUME_LOOKBACK = 20


def _clamp(value: float) -> float:
    return max(0.0, min(value, 1.0))


def _abstain(name: str, subject: Optional[str] = None) -> StrategyResult:
    return StrategyResult(
        name=name,
        action=SignalAction.HOLD,
        confidence=0.0,
        weight=0.0,
        reasoning=(f"{subject or name} data not available",),
    )


def macd_strategy(indicators: IndicatorSet, series: Sequence[PriceBar] = ()) -> StrategyResult:
    if indicators.macd is None:
        return _abstain("MACD")

    macd, signal, histogram = indicators.macd.macd, indicators.macd.signal, indicators.macd.histogram
    action = SignalAction.HOLD
    confidence = 0.0
    reasoning: List[str] = []

    if macd > signal and histogram > 0:
        action = SignalAction.BUY
        confidence = 0.6
        reasoning.append("MACD line crossed above signal line")
        if abs(histogram) > MACD_HISTOGRAM_THRESHOLD:
            confidence += 0.2
            reasoning.append("Strong positive histogram momentum")
        if macd > 0 and signal > 0:
            confidence += 0.1
            reasoning.append("MACD in positive territory")
    elif macd < signal and histogram < 0:
        action = SignalAction.SELL
        confidence = 0.6
        reasoning.append("MACD line crossed below signal line")
        if abs(histogram) > MACD_HISTOGRAM_THRESHOLD:
            confidence += 0.2
            reasoning.append("Strong negative histogram momentum")
        if macd < 0 and signal < 0:
            confidence += 0.1
            reasoning.append("MACD in negative territory")

    return StrategyResult("MACD", action, _clamp(confidence), 0.0, tuple(reasoning))


def rsi_strategy(indicators: IndicatorSet, series: Sequence[PriceBar] = ()) -> StrategyResult:
    if indicators.rsi is None:
        return _abstain("RSI")

    rsi = indicators.rsi
    action = SignalAction.HOLD
    confidence = 0.0
    reasoning: List[str] = []

    if rsi < 30:
        action = SignalAction.BUY
        confidence = 0.8
        reasoning.append(f"RSI oversold at {rsi:.2f}")
        if rsi < 20:
            confidence = 1.0
            reasoning.append("Extremely oversold condition")
    elif rsi > 70:
        action = SignalAction.SELL
        confidence = 0.8
        reasoning.append(f"RSI overbought at {rsi:.2f}")
        if rsi > 80:
            confidence = 1.0
            reasoning.append("Extremely overbought condition")
    elif 40 <= rsi <= 60:
        confidence = 0.3
        reasoning.append(f"RSI neutral at {rsi:.2f}")

    return StrategyResult("RSI", action, confidence, 0.0, tuple(reasoning))


def stochastic_strategy(indicators: IndicatorSet, series: Sequence[PriceBar] = ()) -> StrategyResult:
    if indicators.stochastic is None:
        return _abstain("Stochastic")

    k, d = indicators.stochastic.k, indicators.stochastic.d
    levels = f"(K={k:.2f}, D={d:.2f})"
    action = SignalAction.HOLD
    confidence = 0.0
    reasoning: List[str] = []

    if k < 20 and d < 20 and k > d:
        action, confidence = SignalAction.BUY, 0.9
        reasoning.append(f"Stochastic oversold with bullish crossover {levels}")
    elif k > 80 and d > 80 and k < d:
        action, confidence = SignalAction.SELL, 0.9
        reasoning.append(f"Stochastic overbought with bearish crossover {levels}")
    elif k < 20 and d < 20:
        action, confidence = SignalAction.BUY, 0.6
        reasoning.append(f"Stochastic oversold {levels}")
    elif k > 80 and d > 80:
        action, confidence = SignalAction.SELL, 0.6
        reasoning.append(f"Stochastic overbought {levels}")

    return StrategyResult("Stochastic", action, confidence, 0.0, tuple(reasoning))


def bollinger_strategy(indicators: IndicatorSet, series: Sequence[PriceBar] = ()) -> StrategyResult:
    """Position the latest close inside the bands; a narrow band adds a squeeze bonus."""
    bands = indicators.bollinger_bands
    if bands is None:
        return _abstain("Bollinger Bands")

    price = series[-1].close if series else bands.middle
    band_width = bands.upper - bands.lower
    position = (price - bands.lower) / band_width if band_width > 0 else 0.5

    action = SignalAction.HOLD
    confidence = 0.0
    reasoning: List[str] = []

    if position < 0.1:
        action, confidence = SignalAction.BUY, 0.8
        reasoning.append("Price near lower Bollinger Band (oversold)")
    elif position > 0.9:
        action, confidence = SignalAction.SELL, 0.8
        reasoning.append("Price near upper Bollinger Band (overbought)")
    elif 0.4 <= position <= 0.6:
        confidence = 0.5
        reasoning.append("Price in middle of Bollinger Bands")

    average = (bands.upper + bands.lower) / 2
    if average > 0 and band_width / average * 100 < BOLLINGER_SQUEEZE_PCT:
        confidence += 0.2
        reasoning.append("Bollinger Band squeeze detected - volatility breakout expected")

    return StrategyResult("Bollinger Bands", action, _clamp(confidence), 0.0, tuple(reasoning))


def moving_average_strategy(indicators: IndicatorSet, series: Sequence[PriceBar] = ()) -> StrategyResult:
    averages = (indicators.sma20, indicators.sma50, indicators.ema12, indicators.ema26)
    if any(value is None for value in averages):
        return _abstain("Moving Averages", "Moving averages")

    sma20, sma50, ema12, ema26 = averages
    action = SignalAction.HOLD
    confidence = 0.0
    reasoning: List[str] = []

    if sma20 > sma50:
        action, confidence = SignalAction.BUY, 0.4
        reasoning.append("Golden Cross: SMA20 above SMA50")
    elif sma20 < sma50:
        action, confidence = SignalAction.SELL, 0.4
        reasoning.append("Death Cross: SMA20 below SMA50")

    if ema12 > ema26:
        if action == SignalAction.BUY:
            confidence += 0.3
            reasoning.append("EMA12 above EMA26 confirms bullish momentum")
        elif action == SignalAction.HOLD:
            action, confidence = SignalAction.BUY, 0.3
            reasoning.append("EMA12 above EMA26 indicates bullish momentum")
    elif ema12 < ema26:
        if action == SignalAction.SELL:
            confidence += 0.3
            reasoning.append("EMA12 below EMA26 confirms bearish momentum")
        elif action == SignalAction.HOLD:
            action, confidence = SignalAction.SELL, 0.3
            reasoning.append("EMA12 below EMA26 indicates bearish momentum")

    return StrategyResult("Moving Averages", action, _clamp(confidence), 0.0, tuple(reasoning))


def volume_strategy(indicators: IndicatorSet, series: Sequence[PriceBar] = ()) -> StrategyResult:
    if indicators.vwap is None or len(series) < VOLUME_LOOKBACK:
        return _abstain("Volume Analysis", "Volume")

    recent = series[-VOLUME_LOOKBACK:]
    average_volume = sum(bar.volume for bar in recent) / len(recent)
    current = series[-1]
    action = SignalAction.HOLD
    confidence = 0.0
    reasoning: List[str] = []

    if average_volume > 0:
        ratio = current.volume / average_volume
        if ratio > 1.5:
            confidence += 0.3
            reasoning.append(f"High volume confirmation ({ratio:.2f}x average)")
        elif ratio < 0.5:
            confidence -= 0.2
            reasoning.append(f"Low volume warning ({ratio:.2f}x average)")

    if current.close > indicators.vwap * 1.02:
        action = SignalAction.SELL
        confidence += 0.4
        reasoning.append("Price above VWAP indicates selling pressure")
    elif current.close < indicators.vwap * 0.98:
        action = SignalAction.BUY
        confidence += 0.4
        reasoning.append("Price below VWAP indicates buying opportunity")

    return StrategyResult("Volume Analysis", action, _clamp(confidence), 0.0, tuple(reasoning))


# Fixed evaluation order; keys match StrategyWeights fields.
STRATEGIES: Tuple[Tuple[str, StrategyFn], ...] = (
    ("macd", macd_strategy),
    ("rsi", rsi_strategy),
    ("stochastic", stochastic_strategy),
    ("bollinger_bands", bollinger_strategy),
    ("moving_averages", moving_average_strategy),
    ("volume", volume_strategy),
)


def calculate_position_size(
    portfolio_value: float,
    entry_price: float,
    stop_loss_price: float,
    risk_params: SignalRiskParameters,
) -> int:
    """
    Whole-unit size bounded by both the position cap and the stop-loss risk budget.

    Returns 0 when the inputs cannot produce a positive size.
    """
    if portfolio_value <= 0 or entry_price <= 0:
        return 0
    max_position_value = portfolio_value * risk_params.max_position_size / 100
    by_value = max_position_value / entry_price

    risk_per_share = abs(entry_price - stop_loss_price)
    if risk_per_share <= 0:
        return max(0, math.floor(by_value))
    risk_amount = portfolio_value * risk_params.stop_loss_percentage / 100
    by_risk = risk_amount / risk_per_share
    return max(0, math.floor(min(by_value, by_risk)))


class SignalGenerator:
    """
    Multi-strategy signal generator.

    Weights and risk parameters set here are defaults; generate_signal
    accepts per-call overrides.
    """

    def __init__(
        self,
        weights: Optional[StrategyWeights] = None,
        risk_params: Optional[SignalRiskParameters] = None,
    ):
        self.weights = weights or StrategyWeights()
        self.risk_params = risk_params or SignalRiskParameters()

    def evaluate_strategies(
        self,
        indicators: IndicatorSet,
        series: Sequence[PriceBar],
        weights: StrategyWeights,
    ) -> Tuple[StrategyResult, ...]:
        return tuple(
            replace(evaluate(indicators, series), weight=getattr(weights, key))
            for key, evaluate in STRATEGIES
        )

    def generate_signal(
        self,
        symbol: str,
        asset_type: AssetType,
        indicators: IndicatorSet,
        series: Sequence[PriceBar],
        current_price: float,
        portfolio_value: float = 0.0,
        weights: Optional[Dict[str, float]] = None,
        risk_params: Optional[SignalRiskParameters] = None,
        timestamp: Optional[datetime] = None,
    ) -> TradingSignal:
        """
        Combine the six strategies into one trading signal.

        Args:
            symbol: Ticker or pair
            asset_type: Stock or crypto
            indicators: Indicator set for the latest bar
            series: Price series the indicators were computed from
            current_price: Price snapshot recorded on the signal
            portfolio_value: Used to suggest a position size
            weights: Per-strategy weight overrides (not renormalized)
            risk_params: Override for stop-loss/take-profit parameters
            timestamp: Generation time (defaults to now)

        Returns:
            TradingSignal

        Raises:
            ValueError: Invalid symbol, price or weight override
        """
        if not symbol or not symbol.strip():
            raise ValueError("Symbol is required")
        if current_price is None or current_price <= 0:
            raise ValueError("Current price must be positive")

        asset_type = AssetType(asset_type)
        merged_weights = (
            StrategyWeights.with_overrides({**self.weights.model_dump(), **weights})
            if weights else self.weights
        )
        risk = risk_params or self.risk_params
        generated_at = timestamp or utc_now()

        strategies = self.evaluate_strategies(indicators, series, merged_weights)

        buy_score = 0.0
        sell_score = 0.0
        reasoning: List[str] = []
        for result in strategies:
            if result.action == SignalAction.BUY:
                buy_score += result.confidence * result.weight
            elif result.action == SignalAction.SELL:
                sell_score += result.confidence * result.weight
            reasoning.extend(f"{result.name}: {line}" for line in result.reasoning)

        if buy_score > sell_score and buy_score > risk.min_confidence:
            action, confidence = SignalAction.BUY, min(buy_score, 1.0)
        elif sell_score > buy_score and sell_score > risk.min_confidence:
            action, confidence = SignalAction.SELL, min(sell_score, 1.0)
        else:
            action, confidence = SignalAction.HOLD, min(abs(buy_score - sell_score), 1.0)
            reasoning.append("Signal confidence below minimum threshold")

        stop_loss = take_profit = suggested_quantity = None
        if action != SignalAction.HOLD:
            stop_distance = current_price * risk.stop_loss_percentage / 100
            profit_distance = stop_distance * risk.take_profit_ratio
            if action == SignalAction.BUY:
                stop_loss = current_price - stop_distance
                take_profit = current_price + profit_distance
            else:
                stop_loss = current_price + stop_distance
                take_profit = current_price - profit_distance
            suggested_quantity = calculate_position_size(
                portfolio_value, current_price, stop_loss, risk
            )

        signal = TradingSignal(
            id=f"{symbol}_{asset_type.value}_{int(generated_at.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}",
            symbol=symbol,
            asset_type=asset_type,
            action=action,
            confidence=confidence,
            price=current_price,
            timestamp=generated_at,
            reasoning=tuple(reasoning),
            indicators=indicators,
            strategies=strategies,
            target_price=take_profit,
            stop_loss=stop_loss,
            take_profit=take_profit,
            suggested_quantity=suggested_quantity,
        )
        logger.debug(
            "Generated %s signal for %s (buy=%.3f sell=%.3f confidence=%.3f)",
            action.value, symbol, buy_score, sell_score, confidence,
        )
        return signal

    @staticmethod
    def validate_signal(signal: TradingSignal) -> SignalValidation:
        """Advisory quality check; callers decide whether to act on issues."""
        issues: List[str] = []
        recommendations: List[str] = []

        if signal.confidence < 0.5:
            issues.append("Low confidence signal")
            recommendations.append("Consider additional confirmation")

        if signal.action != SignalAction.HOLD and (signal.stop_loss is None or signal.take_profit is None):
            issues.append("Missing risk management levels")
            recommendations.append("Set stop loss and take profit levels")

        if len(signal.strategies) < 3:
            issues.append("Insufficient strategy analysis")
            recommendations.append("Include more technical indicators")

        active = [strategy for strategy in signal.strategies if strategy.confidence > 0.3]
        if len(active) < 3:
            issues.append("Limited strategy consensus")
            recommendations.append("Wait for more indicators to align")

        return SignalValidation(
            valid=not issues,
            issues=tuple(issues),
            recommendations=tuple(recommendations),
        )
