"""
Risk Manager Module.
Applies the pre-dispatch risk gates to a trade against live portfolio metrics.
"""

from __future__ import annotations

import math
from typing import Optional

from config.risk_profiles import RiskManagementParams
from engine.models import PortfolioMetrics, TradeAction


class RiskManager:
    """
    Risk gate evaluator.

    Responsible for:
    - Halting all trading once the daily loss limit is hit
    - Capping the number of open positions for new buys
    - Capping a single buy's share of portfolio value

    Holds no state between calls; every check runs against the metrics
    passed in, which callers must fetch at execution time.
    """

    def __init__(self, params: Optional[RiskManagementParams] = None):
        self.params = params or RiskManagementParams()

    def validate_order(
        self,
        action: TradeAction,
        quantity: float,
        price: float,
        metrics: PortfolioMetrics,
    ) -> tuple[bool, Optional[str]]:
        """
        Validate an order against the risk limits.

        Args:
            action: Buy or sell
            quantity: Order quantity
            price: Order or estimated fill price
            metrics: Current portfolio metrics

        Returns:
            (is_valid, error_message)
        """
        if metrics.day_change_percent <= -self.params.max_daily_loss:
            return False, f"Daily loss limit exceeded ({metrics.day_change_percent:.2f}%)"

        if action != TradeAction.BUY:
            return True, None

        if metrics.open_positions >= self.params.max_open_positions:
            return False, f"Maximum open positions reached ({self.params.max_open_positions})"

        position_pct = self.position_size_percent(quantity, price, metrics.total_value)
        if position_pct is None:
            return False, "Portfolio value unavailable"
        if position_pct > self.params.max_position_size:
            return (
                False,
                f"Position size too large ({position_pct:.2f}% > {self.params.max_position_size:g}%)",
            )

        return True, None

    @staticmethod
    def position_size_percent(quantity: float, price: float, total_value: float) -> Optional[float]:
        """Order value as a percentage of portfolio value, or None if the value is unusable."""
        if not math.isfinite(total_value) or total_value <= 0:
            return None
        return (quantity * price) / total_value * 100.0
