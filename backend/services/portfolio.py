"""
Portfolio Service.
Manages portfolio state, positions, and P&L tracking on top of the
database storage layer, and implements the portfolio-store contract the
trading engine depends on.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from engine.errors import GatewayError
from engine.models import (
    AssetType,
    BollingerValue,
    IndicatorSet,
    MacdValue,
    PortfolioMetrics,
    SignalAction,
    SignalValidation,
    StochasticValue,
    StrategyResult,
    TradeRecord,
    TradingSignal,
    utc_now,
)
from services.market_data import MarketDataSource
from storage.models import Portfolio, Position, Trade, TradingSignalRecord
from storage.service import StorageService, from_db_time

logger = logging.getLogger(__name__)


class PortfolioNotFoundError(LookupError):
    """Portfolio does not exist or does not belong to the user."""
    pass


class PortfolioStore(ABC):
    """
    Portfolio store contract used by the trading engine.

    The engine holds no lock across calls, so append_trade must apply cash and
    position changes atomically (one transaction per fill); concurrent trades
    on the same portfolio rely on that to avoid lost updates.
    """

    @abstractmethod
    async def get_metrics(self, user_id: str, portfolio_id: str) -> PortfolioMetrics:
        """Compute current metrics from stored state and live quotes."""
        pass

    @abstractmethod
    async def append_trade(self, record: TradeRecord) -> None:
        """Append a fill to the trade log and apply it to cash and positions."""
        pass

    @abstractmethod
    async def recompute_performance(self, portfolio_id: str) -> None:
        """Refresh the cached portfolio valuation."""
        pass

    @abstractmethod
    async def get_recent_high_confidence_signals(
        self, window_hours: int, min_confidence: float
    ) -> List[TradingSignal]:
        """Signals generated within the window at or above min_confidence, strongest first."""
        pass


def _indicators_from_payload(payload: Optional[Mapping[str, Any]]) -> Optional[IndicatorSet]:
    if not payload:
        return None
    timestamp = payload.get("timestamp")
    macd = payload.get("macd")
    stochastic = payload.get("stochastic")
    bands = payload.get("bollinger_bands")
    return IndicatorSet(
        symbol=payload.get("symbol", ""),
        timestamp=datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else timestamp,
        macd=MacdValue(**macd) if macd else None,
        rsi=payload.get("rsi"),
        stochastic=StochasticValue(**stochastic) if stochastic else None,
        bollinger_bands=BollingerValue(**bands) if bands else None,
        sma20=payload.get("sma20"),
        sma50=payload.get("sma50"),
        ema12=payload.get("ema12"),
        ema26=payload.get("ema26"),
        vwap=payload.get("vwap"),
        williams_r=payload.get("williams_r"),
        atr=payload.get("atr"),
    )


def signal_from_record(record: TradingSignalRecord) -> TradingSignal:
    """Rebuild an immutable TradingSignal from its stored row."""
    strategies = tuple(
        StrategyResult(
            name=item["name"],
            action=SignalAction(item["action"]),
            confidence=float(item["confidence"]),
            weight=float(item["weight"]),
            reasoning=tuple(item.get("reasoning") or ()),
        )
        for item in (record.strategies or [])
    )
    return TradingSignal(
        id=record.id,
        symbol=record.symbol,
        asset_type=AssetType(record.asset_type.value),
        action=SignalAction(record.action.value),
        confidence=record.confidence,
        price=record.price,
        timestamp=from_db_time(record.generated_at),
        reasoning=tuple(record.reasoning or ()),
        indicators=_indicators_from_payload(record.indicators),
        strategies=strategies,
        target_price=record.target_price,
        stop_loss=record.stop_loss,
        take_profit=record.take_profit,
        suggested_quantity=record.suggested_quantity,
    )


class PortfolioService(PortfolioStore):
    """
    Portfolio management service.

    Responsible for:
    - Portfolio metrics for risk gating (live-quote valuation)
    - Applying fills to cash and positions
    - Performance snapshots and analytics
    - Signal history used by automated trading

    Storage calls stay on the event loop thread: one session serves every
    coroutine gathered for a request and must not cross into worker threads.
    """

    def __init__(
        self,
        storage: StorageService,
        market_data: Optional[Mapping[AssetType, MarketDataSource]] = None,
    ):
        """
        Initialize portfolio service.

        Args:
            storage: StorageService instance
            market_data: Quote sources per asset type for mark-to-market
        """
        self.storage = storage
        self.market_data: Dict[AssetType, MarketDataSource] = dict(market_data or {})

    # ------------------------------------------------------------------
    # Portfolio store contract
    # ------------------------------------------------------------------

    async def get_metrics(self, user_id: str, portfolio_id: str) -> PortfolioMetrics:
        portfolio = self._require_portfolio(portfolio_id, user_id)
        return await self._compute_metrics(portfolio)

    async def append_trade(self, record: TradeRecord) -> None:
        trade = self.storage.apply_trade(
            portfolio_id=record.portfolio_id,
            symbol=record.symbol,
            asset_type=record.asset_type.value,
            action=record.action.value,
            order_type=record.order_type.value,
            quantity=record.quantity,
            price=record.price,
            fees=record.fees,
            executed_at=record.timestamp,
            user_id=record.user_id,
            signal_id=record.signal_id,
            external_order_id=record.external_order_id,
            stop_loss=record.stop_loss,
            take_profit=record.take_profit,
            status=record.status,
        )
        logger.info(
            "Recorded %s %s %s @ %.4f in portfolio %s (trade %s)",
            record.action.value, record.quantity, record.symbol, record.price,
            record.portfolio_id, trade.id,
        )

    async def recompute_performance(self, portfolio_id: str) -> None:
        portfolio = self._require_portfolio(portfolio_id)
        metrics = await self._compute_metrics(portfolio)
        self.storage.update_portfolio_value(portfolio, metrics.total_value)
        self.storage.record_portfolio_snapshot(
            portfolio_id=portfolio_id,
            total_value=metrics.total_value,
            cash=metrics.total_cash,
            invested=metrics.total_invested,
            realized_pnl_total=metrics.realized_pnl,
            day_change=metrics.day_change,
            open_positions=metrics.open_positions,
            timestamp=utc_now(),
        )

    async def get_recent_high_confidence_signals(
        self, window_hours: int, min_confidence: float
    ) -> List[TradingSignal]:
        since = utc_now() - timedelta(hours=window_hours)
        records = self.storage.get_high_confidence_signals(since, min_confidence)
        return [signal_from_record(record) for record in records]

    # ------------------------------------------------------------------
    # Portfolio management
    # ------------------------------------------------------------------

    def create_portfolio(self, user_id: str, name: str, initial_cash: float,
                         mode: str = "paper") -> Portfolio:
        if initial_cash < 0:
            raise ValueError("Initial cash cannot be negative")
        portfolio = self.storage.create_portfolio(user_id, name, initial_cash, mode)
        logger.info("Created %s portfolio %s for user %s", mode, portfolio.id, user_id)
        return portfolio

    def get_portfolio(self, portfolio_id: str, user_id: Optional[str] = None) -> Portfolio:
        """Get a portfolio, raising PortfolioNotFoundError if it is missing or not the user's."""
        return self._require_portfolio(portfolio_id, user_id)

    def list_portfolios(self, user_id: str) -> List[Portfolio]:
        return self.storage.list_portfolios(user_id)

    def save_signal(
        self,
        signal: TradingSignal,
        validation: Optional[SignalValidation] = None,
        user_id: Optional[str] = None,
    ) -> TradingSignalRecord:
        """Append a generated signal to the signal history."""
        payload = signal.to_dict()
        return self.storage.save_signal({
            "id": signal.id,
            "user_id": user_id,
            "symbol": signal.symbol,
            "asset_type": signal.asset_type.value,
            "action": signal.action.value,
            "confidence": signal.confidence,
            "price": signal.price,
            "target_price": signal.target_price,
            "stop_loss": signal.stop_loss,
            "take_profit": signal.take_profit,
            "suggested_quantity": signal.suggested_quantity,
            "is_valid": validation.valid if validation else True,
            "reasoning": payload["reasoning"],
            "indicators": payload["indicators"],
            "strategies": payload["strategies"],
            "generated_at": signal.timestamp,
        })

    def get_recent_signals(self, limit: int = 50, symbol: Optional[str] = None,
                           user_id: Optional[str] = None) -> List[TradingSignal]:
        records = self.storage.get_recent_signals(limit=limit, symbol=symbol, user_id=user_id)
        return [signal_from_record(record) for record in records]

    async def get_positions(self, portfolio_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get open positions marked to market.

        Falls back to the average price when a live quote is unavailable.
        """
        self._require_portfolio(portfolio_id, user_id)
        result = []
        for position in self.storage.get_open_positions(portfolio_id):
            current_price = await self._current_price(position)
            market_value = position.quantity * current_price
            cost_basis = position.quantity * position.average_price
            unrealized = market_value - cost_basis
            result.append({
                "id": position.id,
                "portfolio_id": position.portfolio_id,
                "symbol": position.symbol,
                "asset_type": position.asset_type.value,
                "quantity": position.quantity,
                "average_price": position.average_price,
                "current_price": current_price,
                "market_value": market_value,
                "unrealized_pnl": unrealized,
                "unrealized_pnl_percent": (unrealized / cost_basis * 100.0) if cost_basis > 0 else 0.0,
                "opened_at": from_db_time(position.opened_at),
            })
        return result

    def get_trade_history(self, portfolio_id: str, limit: int = 50, offset: int = 0,
                          user_id: Optional[str] = None) -> Tuple[List[Trade], int]:
        self._require_portfolio(portfolio_id, user_id)
        trades = self.storage.get_trades(portfolio_id, limit=limit, offset=offset)
        return trades, self.storage.count_trades(portfolio_id)

    async def calculate_performance(self, portfolio_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Calculate portfolio performance metrics.

        Period changes sum the realized P&L of trades inside each window.
        """
        portfolio = self._require_portfolio(portfolio_id, user_id)
        metrics = await self._compute_metrics(portfolio)
        trades = self.storage.get_all_trades(portfolio_id)
        now = utc_now()

        def _window_change(days: int) -> float:
            cutoff = now - timedelta(days=days)
            return sum(
                trade.realized_pnl or 0.0
                for trade in trades
                if from_db_time(trade.executed_at) >= cutoff
            )

        def _pct(value: float) -> float:
            return (value / metrics.total_value * 100.0) if metrics.total_value > 0 else 0.0

        closed = [trade for trade in trades if trade.realized_pnl is not None]
        wins = [trade.realized_pnl for trade in closed if trade.realized_pnl > 0]
        losses = [trade.realized_pnl for trade in closed if trade.realized_pnl < 0]
        avg_win = sum(wins) / len(wins) if wins else 0.0
        avg_loss = abs(sum(losses) / len(losses)) if losses else 0.0

        total_return = metrics.total_value - portfolio.initial_cash
        changes = {
            "day_change": metrics.day_change,
            "week_change": _window_change(7),
            "month_change": _window_change(30),
            "year_change": _window_change(365),
        }
        return {
            "portfolio_id": portfolio_id,
            "total_value": metrics.total_value,
            "total_return": total_return,
            "total_return_percent": (
                total_return / portfolio.initial_cash * 100.0 if portfolio.initial_cash > 0 else 0.0
            ),
            **changes,
            **{f"{key}_percent": _pct(value) for key, value in changes.items()},
            "win_rate": (len(wins) / len(closed) * 100.0) if closed else 0.0,
            "avg_win": avg_win,
            "avg_loss": avg_loss,
            "profit_factor": (avg_win / avg_loss) if avg_loss > 0 else 0.0,
            "total_trades": len(trades),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_portfolio(self, portfolio_id: str, user_id: Optional[str] = None) -> Portfolio:
        portfolio = self.storage.get_portfolio(portfolio_id, user_id)
        if portfolio is None:
            raise PortfolioNotFoundError(f"Portfolio {portfolio_id} not found")
        return portfolio

    async def _current_price(self, position: Position) -> float:
        source = self.market_data.get(AssetType(position.asset_type.value))
        if source is None:
            return position.average_price
        try:
            quote = await source.get_latest_quote(position.symbol)
        except GatewayError as exc:
            logger.warning("Quote unavailable for %s, using average price: %s", position.symbol, exc)
            return position.average_price
        return quote.price if quote.price > 0 else position.average_price

    async def _compute_metrics(self, portfolio: Portfolio) -> PortfolioMetrics:
        positions = self.storage.get_open_positions(portfolio.id)
        invested = 0.0
        unrealized = 0.0
        for position in positions:
            current_price = await self._current_price(position)
            invested += position.quantity * position.average_price
            unrealized += position.quantity * (current_price - position.average_price)

        realized = sum(trade.realized_pnl or 0.0 for trade in self.storage.get_all_trades(portfolio.id))
        start_of_day = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
        today_trades = self.storage.get_trades_since(portfolio.id, start_of_day)
        day_change = sum(trade.realized_pnl or 0.0 for trade in today_trades)

        total_value = portfolio.cash_balance + invested + unrealized
        return PortfolioMetrics(
            total_value=total_value,
            total_cash=portfolio.cash_balance,
            total_invested=invested,
            unrealized_pnl=unrealized,
            realized_pnl=realized,
            day_change=day_change,
            day_change_percent=(day_change / total_value * 100.0) if total_value > 0 else 0.0,
            open_positions=len(positions),
            today_trades=len(today_trades),
        )
