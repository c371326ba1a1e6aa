"""
Core Domain Types.

Immutable value objects passed between the indicator engine, the signal
generator and the trading engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AssetType(str, Enum):
    """Asset classes routed to distinct execution gateways."""
    STOCK = "stock"
    CRYPTO = "crypto"


class SignalAction(str, Enum):
    """Signal and strategy directions."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class TradeAction(str, Enum):
    """Trade directions accepted by the trading engine."""
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order types accepted by the trading engine."""
    MARKET = "market"
    LIMIT = "limit"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class TradeState(str, Enum):
    """
    Terminal state of one execution attempt.

    FILLED means the broker confirmed the order but the portfolio store was
    not fully updated; RECONCILED means both the trade log and the
    performance recompute succeeded.
    """
    REJECTED = "rejected"
    GATEWAY_ERROR = "gateway_error"
    FILLED = "filled"
    RECONCILED = "reconciled"


@dataclass(frozen=True)
class PriceBar:
    """One OHLCV interval."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3


@dataclass(frozen=True)
class MacdValue:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class StochasticValue:
    k: float
    d: float


@dataclass(frozen=True)
class BollingerValue:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class IndicatorSet:
    """
    Indicator bundle for one bar.

    A field is None when there was not enough history at that bar; strategies
    treat None as "abstain", never as zero.
    """

    symbol: str
    timestamp: datetime
    macd: Optional[MacdValue] = None
    rsi: Optional[float] = None
    stochastic: Optional[StochasticValue] = None
    bollinger_bands: Optional[BollingerValue] = None
    sma20: Optional[float] = None
    sma50: Optional[float] = None
    ema12: Optional[float] = None
    ema26: Optional[float] = None
    vwap: Optional[float] = None
    williams_r: Optional[float] = None
    atr: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


@dataclass(frozen=True)
class DataSufficiency:
    """Advisory report on whether a series supports every indicator."""

    valid: bool
    missing: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StrategyResult:
    """Vote cast by one strategy evaluator."""

    name: str
    action: SignalAction
    confidence: float
    weight: float
    reasoning: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "action": self.action.value,
            "confidence": self.confidence,
            "weight": self.weight,
            "reasoning": list(self.reasoning),
        }


@dataclass(frozen=True)
class TradingSignal:
    """Aggregated recommendation for one symbol at one point in time."""

    id: str
    symbol: str
    asset_type: AssetType
    action: SignalAction
    confidence: float
    price: float
    timestamp: datetime
    reasoning: Tuple[str, ...] = ()
    indicators: Optional[IndicatorSet] = None
    strategies: Tuple[StrategyResult, ...] = ()
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    suggested_quantity: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "asset_type": self.asset_type.value,
            "action": self.action.value,
            "confidence": self.confidence,
            "price": self.price,
            "timestamp": self.timestamp.isoformat(),
            "reasoning": list(self.reasoning),
            "indicators": self.indicators.to_dict() if self.indicators else None,
            "strategies": [strategy.to_dict() for strategy in self.strategies],
            "target_price": self.target_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "suggested_quantity": self.suggested_quantity,
        }


@dataclass(frozen=True)
class SignalValidation:
    valid: bool
    issues: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TradeParams:
    """
    Caller-constructed trade request.

    Enum-typed fields also accept raw strings; the trading engine validates
    and normalizes them before use.
    """

    symbol: str
    asset_type: Any
    action: Any
    quantity: float
    user_id: str
    portfolio_id: str
    order_type: Any = OrderType.MARKET
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    signal_id: Optional[str] = None


@dataclass(frozen=True)
class TradeResult:
    """One-shot outcome of a single execution attempt."""

    success: bool
    state: TradeState
    timestamp: datetime = field(default_factory=utc_now)
    order_id: Optional[str] = None
    executed_price: Optional[float] = None
    executed_quantity: Optional[float] = None
    fees: Optional[float] = None
    error: Optional[str] = None
    warnings: Tuple[str, ...] = ()

    @classmethod
    def failure(cls, error: str, state: TradeState = TradeState.REJECTED) -> "TradeResult":
        return cls(success=False, state=state, error=error)

    @property
    def reconciled(self) -> bool:
        return self.state == TradeState.RECONCILED


@dataclass(frozen=True)
class PortfolioMetrics:
    """Point-in-time portfolio snapshot used by the risk gates."""

    total_value: float
    total_cash: float
    total_invested: float
    unrealized_pnl: float
    realized_pnl: float
    day_change: float
    day_change_percent: float
    open_positions: int
    today_trades: int


@dataclass(frozen=True)
class TradeRecord:
    """Row appended to the portfolio store after a broker fill."""

    portfolio_id: str
    user_id: str
    symbol: str
    asset_type: AssetType
    action: TradeAction
    quantity: float
    price: float
    order_type: OrderType
    fees: float
    timestamp: datetime
    external_order_id: Optional[str] = None
    signal_id: Optional[str] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    status: str = "executed"


@dataclass(frozen=True)
class OrderCancelResult:
    """Outcome of a cancel request routed to one execution gateway."""

    success: bool
    order_id: str
    asset_type: AssetType
    timestamp: datetime = field(default_factory=utc_now)
    error: Optional[str] = None
    # Broker HTTP status when the gateway reported one
    status_code: Optional[int] = None


@dataclass(frozen=True)
class AutomatedTradeOutcome:
    signal_id: str
    symbol: str
    success: bool
    order_id: Optional[str] = None
    quantity: Optional[float] = None
    error: Optional[str] = None


@dataclass
class AutomatedTradingSummary:
    """Accumulated result of one automated-trading sweep."""

    portfolio_id: str
    processed: int = 0
    executed: int = 0
    failed: int = 0
    results: List[AutomatedTradeOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None
