"""
API Data Models and Contracts.
Defines Pydantic models for request/response validation.
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
import re
from pydantic import BaseModel, Field, field_validator

from engine.models import AssetType, OrderType, SignalAction, TradeAction, TradeState

_SYMBOL_PATTERN = re.compile(r"^[A-Z][A-Z0-9.\-/]{0,14}$")


def _clean_symbol(value: str) -> str:
    symbol = value.strip().upper()
    if not _SYMBOL_PATTERN.match(symbol):
        raise ValueError("Invalid symbol format")
    return symbol


# ============================================================================
# Signal Models
# ============================================================================

class SignalRequest(BaseModel):
    """Signal generation request for one symbol."""
    symbol: str = Field(..., description="Ticker or crypto pair", min_length=1, max_length=15)
    asset_type: AssetType = Field(default=AssetType.STOCK, description="Asset class")
    user_id: Optional[str] = Field(None, description="Owner of the generated signal")
    portfolio_id: Optional[str] = Field(None, description="Portfolio used to suggest a position size")
    weights: Optional[Dict[str, float]] = Field(None, description="Per-strategy weight overrides")
    timeframe: str = Field(default="1Day", description="Bar interval")

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, value: str) -> str:
        return _clean_symbol(value)


class BatchSymbol(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=15)
    asset_type: AssetType = Field(default=AssetType.STOCK)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, value: str) -> str:
        return _clean_symbol(value)


class BatchSignalRequest(BaseModel):
    """Signal generation request for several symbols."""
    symbols: List[BatchSymbol] = Field(..., min_length=1, description="Symbols to analyze")
    user_id: Optional[str] = Field(None)
    portfolio_id: Optional[str] = Field(None)
    weights: Optional[Dict[str, float]] = Field(None)

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, symbols: List[BatchSymbol]) -> List[BatchSymbol]:
        if len(symbols) > 50:
            raise ValueError("symbols cannot exceed 50 entries")
        return symbols


class StrategyResultResponse(BaseModel):
    name: str
    action: SignalAction
    confidence: float
    weight: float
    reasoning: List[str] = Field(default_factory=list)


class SignalResponse(BaseModel):
    """Generated trading signal."""
    id: str = Field(..., description="Signal ID")
    symbol: str
    asset_type: AssetType
    action: SignalAction
    confidence: float = Field(..., description="Aggregate confidence in [0, 1]")
    price: float = Field(..., description="Price snapshot at generation time")
    timestamp: datetime
    reasoning: List[str] = Field(default_factory=list)
    indicators: Optional[Dict[str, Any]] = None
    strategies: List[StrategyResultResponse] = Field(default_factory=list)
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    suggested_quantity: Optional[int] = None


class SignalValidationResponse(BaseModel):
    valid: bool
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class SignalGenerationResponse(BaseModel):
    """Outcome of generating a signal for one symbol."""
    success: bool
    symbol: str
    asset_type: AssetType
    signal: Optional[SignalResponse] = None
    validation: Optional[SignalValidationResponse] = None
    signal_strength: Optional[str] = Field(None, description="Strong, Moderate or Weak")
    data_points: int = 0
    error: Optional[str] = None


class BatchSignalResponse(BaseModel):
    results: List[SignalGenerationResponse]
    total: int
    successful: int
    failed: int


class SignalsListResponse(BaseModel):
    signals: List[SignalResponse]
    total: int


class DataSufficiencyResponse(BaseModel):
    valid: bool
    missing: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class IndicatorAnalysisResponse(BaseModel):
    """Latest indicators and data-sufficiency report for a symbol."""
    symbol: str
    asset_type: AssetType
    data_points: int
    indicators: Optional[Dict[str, Any]] = None
    sufficiency: DataSufficiencyResponse
    history: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================================================
# Trading Models
# ============================================================================

class TradeRequest(BaseModel):
    """Trade execution request."""
    symbol: str = Field(..., description="Ticker or crypto pair", min_length=1, max_length=15)
    asset_type: AssetType = Field(..., description="Asset class")
    action: TradeAction = Field(..., description="Buy or sell")
    quantity: float = Field(..., description="Order quantity", gt=0)
    user_id: str = Field(..., min_length=1)
    portfolio_id: str = Field(..., min_length=1)
    order_type: OrderType = Field(default=OrderType.MARKET)
    price: Optional[float] = Field(None, description="Limit price or price estimate", gt=0)
    stop_loss: Optional[float] = Field(None, gt=0)
    take_profit: Optional[float] = Field(None, gt=0)
    signal_id: Optional[str] = Field(None)
    timeout_seconds: Optional[float] = Field(None, description="Gateway deadline override", gt=0)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, value: str) -> str:
        return _clean_symbol(value)


class TradeResponse(BaseModel):
    """Trade execution result."""
    success: bool
    state: TradeState
    timestamp: datetime
    order_id: Optional[str] = None
    executed_price: Optional[float] = None
    executed_quantity: Optional[float] = None
    fees: float = 0.0
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class OrderCancelResponse(BaseModel):
    """Order cancel result."""
    success: bool
    order_id: str
    asset_type: AssetType
    timestamp: datetime


class AutomatedTradingRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    portfolio_id: str = Field(..., min_length=1)


class AutomatedTradeOutcomeResponse(BaseModel):
    signal_id: str
    symbol: str
    success: bool
    order_id: Optional[str] = None
    quantity: Optional[float] = None
    error: Optional[str] = None


class AutomatedTradingResponse(BaseModel):
    """Automated sweep summary."""
    success: bool
    portfolio_id: str
    processed: int
    executed: int
    failed: int
    results: List[AutomatedTradeOutcomeResponse] = Field(default_factory=list)
    error: Optional[str] = None


class PortfolioMetricsResponse(BaseModel):
    total_value: float
    total_cash: float
    total_invested: float
    unrealized_pnl: float
    realized_pnl: float
    day_change: float
    day_change_percent: float
    open_positions: int
    today_trades: int


# ============================================================================
# Portfolio Models
# ============================================================================

class PortfolioCreateRequest(BaseModel):
    """Portfolio creation request."""
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    initial_cash: float = Field(..., description="Starting cash balance", ge=0)
    mode: str = Field(default="paper", description="paper or live")

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, value: str) -> str:
        mode = value.strip().lower()
        if mode not in {"paper", "live"}:
            raise ValueError("mode must be either 'paper' or 'live'")
        return mode


class PortfolioResponse(BaseModel):
    id: str
    user_id: str
    name: str
    mode: str
    initial_cash: float
    cash_balance: float
    total_value: float
    is_active: bool
    created_at: Optional[datetime] = None


class PortfoliosResponse(BaseModel):
    portfolios: List[PortfolioResponse]
    total: int


class PositionResponse(BaseModel):
    id: int
    portfolio_id: str
    symbol: str
    asset_type: AssetType
    quantity: float
    average_price: float
    current_price: float
    market_value: float
    unrealized_pnl: float
    unrealized_pnl_percent: float
    opened_at: Optional[datetime] = None


class PositionsResponse(BaseModel):
    positions: List[PositionResponse]
    total_value: float


class TradeHistoryItem(BaseModel):
    id: int
    symbol: str
    asset_type: AssetType
    action: TradeAction
    order_type: OrderType
    quantity: float
    price: float
    fees: float
    realized_pnl: Optional[float] = None
    status: str
    signal_id: Optional[str] = None
    external_order_id: Optional[str] = None
    executed_at: datetime


class TradeHistoryResponse(BaseModel):
    trades: List[TradeHistoryItem]
    total: int
    limit: int
    offset: int


class PerformanceResponse(BaseModel):
    """Portfolio performance summary."""
    portfolio_id: str
    total_value: float
    total_return: float
    total_return_percent: float
    day_change: float
    week_change: float
    month_change: float
    year_change: float
    day_change_percent: float
    week_change_percent: float
    month_change_percent: float
    year_change_percent: float
    win_rate: float
    avg_win: float
    avg_loss: float
    profit_factor: float
    total_trades: int
