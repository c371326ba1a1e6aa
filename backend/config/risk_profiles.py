"""
Risk and Strategy Weight Configuration.

Defaults for signal-level risk levels, trade-level risk gates and the
weights of the six signal strategies.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field

from .settings import Settings


class StrategyWeights(BaseModel):
    """Per-strategy voting weights. Overrides are not renormalized."""
    macd: float = Field(default=0.25, ge=0.0, le=1.0)
    rsi: float = Field(default=0.20, ge=0.0, le=1.0)
    stochastic: float = Field(default=0.15, ge=0.0, le=1.0)
    bollinger_bands: float = Field(default=0.20, ge=0.0, le=1.0)
    moving_averages: float = Field(default=0.15, ge=0.0, le=1.0)
    volume: float = Field(default=0.05, ge=0.0, le=1.0)

    @classmethod
    def with_overrides(cls, overrides: Optional[Dict[str, float]] = None) -> "StrategyWeights":
        """
        Merge caller overrides over the defaults.

        Raises:
            ValueError: Unknown strategy key or weight outside [0, 1]
        """
        overrides = dict(overrides or {})
        unknown = sorted(set(overrides) - set(cls.model_fields))
        if unknown:
            raise ValueError(f"Unknown strategy weight(s): {', '.join(unknown)}")
        return cls(**overrides)

    @property
    def total(self) -> float:
        return sum(self.model_dump().values())


class SignalRiskParameters(BaseModel):
    """Risk levels attached to generated signals (percentages)."""
    max_position_size: float = Field(default=5.0, gt=0.0, le=100.0)
    stop_loss_percentage: float = Field(default=2.0, gt=0.0, le=100.0)
    take_profit_ratio: float = Field(default=3.0, gt=0.0)
    max_daily_loss: float = Field(default=10.0, gt=0.0, le=100.0)
    max_drawdown: float = Field(default=20.0, gt=0.0, le=100.0)
    min_confidence: float = Field(default=0.65, ge=0.0, le=1.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SignalRiskParameters":
        return cls(min_confidence=settings.min_confidence)


class RiskManagementParams(BaseModel):
    """Risk gates applied by the trading engine (percentages of portfolio value)."""
    max_position_size: float = Field(default=10.0, gt=0.0, le=100.0)
    max_daily_loss: float = Field(default=5.0, gt=0.0, le=100.0)
    stop_loss_percentage: float = Field(default=3.0, gt=0.0, le=100.0)
    take_profit_percentage: float = Field(default=6.0, gt=0.0)
    max_open_positions: int = Field(default=10, ge=1)
    risk_per_trade: float = Field(default=2.0, gt=0.0, le=100.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RiskManagementParams":
        return cls(
            max_position_size=settings.max_position_size,
            max_daily_loss=settings.max_daily_loss,
            max_open_positions=settings.max_open_positions,
            risk_per_trade=settings.risk_per_trade,
        )
