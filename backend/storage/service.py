"""
Storage service - High-level interface for storage operations.
Provides business logic on top of repositories.
"""
import logging
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from sqlalchemy.orm import Session

from storage.repositories import (
    PortfolioRepository, PositionRepository, TradeRepository,
    SignalRepository, PortfolioSnapshotRepository,
)
from storage.models import (
    Portfolio, Position, Trade, TradingSignalRecord, PortfolioSnapshot,
    AssetTypeEnum, TradeActionEnum, SignalActionEnum, OrderTypeEnum, PortfolioModeEnum,
)
from storage.database import Base

logger = logging.getLogger(__name__)

_QUANTITY_EPSILON = 1e-9


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to the naive-UTC datetimes stored in the database."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a naive datetime read from the database."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class StorageService:
    """
    Main storage service coordinating all repository operations.
    This is the primary interface for backend services to interact with storage.
    """

    def __init__(self, db: Session):
        """Initialize storage service with database session."""
        self.db = db
        # Ensure schema exists for the active DB bind.
        Base.metadata.create_all(bind=self.db.get_bind())
        self.portfolios = PortfolioRepository(db)
        self.positions = PositionRepository(db)
        self.trades = TradeRepository(db)
        self.signals = SignalRepository(db)
        self.portfolio_snapshots = PortfolioSnapshotRepository(db)

    # Portfolio operations

    def create_portfolio(self, user_id: str, name: str, initial_cash: float,
                         mode: str = "paper") -> Portfolio:
        """Create a funded portfolio."""
        return self.portfolios.create(
            user_id=user_id,
            name=name,
            initial_cash=initial_cash,
            mode=PortfolioModeEnum(mode),
        )

    def get_portfolio(self, portfolio_id: str, user_id: Optional[str] = None) -> Optional[Portfolio]:
        """Get a portfolio, optionally scoped to its owner."""
        if user_id is None:
            return self.portfolios.get_by_id(portfolio_id)
        return self.portfolios.get_for_user(portfolio_id, user_id)

    def list_portfolios(self, user_id: str) -> List[Portfolio]:
        return self.portfolios.get_by_user(user_id)

    def update_portfolio_value(self, portfolio: Portfolio, total_value: float) -> Portfolio:
        portfolio.total_value = total_value
        return self.portfolios.update(portfolio)

    # Position operations

    def get_open_positions(self, portfolio_id: str) -> List[Position]:
        """Get all open positions for a portfolio."""
        return self.positions.get_all_open(portfolio_id)

    # Trade operations

    def apply_trade(
        self,
        portfolio_id: str,
        symbol: str,
        asset_type: str,
        action: str,
        order_type: str,
        quantity: float,
        price: float,
        fees: float = 0.0,
        executed_at: Optional[datetime] = None,
        user_id: Optional[str] = None,
        signal_id: Optional[str] = None,
        external_order_id: Optional[str] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        status: str = "executed",
    ) -> Trade:
        """
        Record a fill and apply it to cash and positions in one transaction.

        The portfolio row is locked for the duration, so concurrent fills on
        the same portfolio cannot lose cash or quantity updates.

        Args:
            portfolio_id: Portfolio the fill belongs to
            symbol: Traded symbol
            asset_type: "stock" or "crypto"
            action: "buy" or "sell"
            order_type: Order type the trade was placed with
            quantity: Filled quantity; zero logs an accepted order without moving cash
            price: Fill price
            fees: Fees charged by the broker

        Returns:
            The persisted trade

        Raises:
            ValueError: Portfolio does not exist
        """
        asset = AssetTypeEnum(asset_type)
        side = TradeActionEnum(action)
        notional = quantity * price
        try:
            portfolio = self.portfolios.lock(portfolio_id)
            if portfolio is None:
                raise ValueError(f"Portfolio {portfolio_id} not found")

            position = self.positions.get_open(portfolio_id, symbol, asset)
            realized_pnl: Optional[float] = None

            if quantity <= 0:
                logger.info(
                    "Order %s for %s logged with nothing filled; cash and positions unchanged",
                    external_order_id, symbol,
                )
            elif side == TradeActionEnum.BUY:
                portfolio.cash_balance -= notional + fees
                if position is None:
                    self.positions.create(
                        portfolio_id=portfolio_id,
                        symbol=symbol,
                        asset_type=asset,
                        quantity=quantity,
                        average_price=price,
                        commit=False,
                    )
                else:
                    new_quantity = position.quantity + quantity
                    position.average_price = (
                        position.quantity * position.average_price + notional
                    ) / new_quantity
                    position.quantity = new_quantity
                    self.positions.update(position, commit=False)
            else:
                portfolio.cash_balance += notional - fees
                if position is None:
                    logger.warning(
                        "Sell of %s %s recorded without an open position in portfolio %s",
                        quantity, symbol, portfolio_id,
                    )
                else:
                    sold = min(quantity, position.quantity)
                    realized_pnl = (price - position.average_price) * sold - fees
                    position.realized_pnl = (position.realized_pnl or 0.0) + realized_pnl
                    position.quantity -= sold
                    if position.quantity <= _QUANTITY_EPSILON:
                        self.positions.close(position, commit=False)
                    else:
                        self.positions.update(position, commit=False)

            trade = self.trades.create(
                portfolio_id=portfolio_id,
                symbol=symbol,
                asset_type=asset,
                action=side,
                order_type=OrderTypeEnum(order_type),
                quantity=quantity,
                price=price,
                fees=fees,
                executed_at=to_db_time(executed_at),
                user_id=user_id,
                signal_id=signal_id,
                external_order_id=external_order_id,
                stop_loss=stop_loss,
                take_profit=take_profit,
                realized_pnl=realized_pnl,
                status=status,
                commit=False,
            )
            self.portfolios.update(portfolio, commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(trade)
        return trade

    def get_trades(self, portfolio_id: str, limit: int = 50, offset: int = 0) -> List[Trade]:
        return self.trades.get_by_portfolio(portfolio_id, limit=limit, offset=offset)

    def count_trades(self, portfolio_id: str) -> int:
        return self.trades.count_by_portfolio(portfolio_id)

    def get_trades_since(self, portfolio_id: str, since: datetime) -> List[Trade]:
        return self.trades.get_since(portfolio_id, to_db_time(since))

    def get_all_trades(self, portfolio_id: str) -> List[Trade]:
        return self.trades.get_all_for_portfolio(portfolio_id)

    # Signal operations

    def save_signal(self, payload: Dict[str, Any]) -> TradingSignalRecord:
        """Persist a generated signal payload (column name -> value)."""
        payload = dict(payload)
        payload["asset_type"] = AssetTypeEnum(payload["asset_type"])
        payload["action"] = SignalActionEnum(payload["action"])
        payload["generated_at"] = to_db_time(payload.get("generated_at"))
        return self.signals.create(payload)

    def get_recent_signals(self, limit: int = 50, symbol: Optional[str] = None,
                           user_id: Optional[str] = None) -> List[TradingSignalRecord]:
        return self.signals.get_recent(limit=limit, symbol=symbol, user_id=user_id)

    def get_high_confidence_signals(self, since: datetime, min_confidence: float,
                                    action: Optional[str] = None) -> List[TradingSignalRecord]:
        return self.signals.get_high_confidence_since(
            to_db_time(since),
            min_confidence,
            SignalActionEnum(action) if action else None,
        )

    # Snapshot operations

    def record_portfolio_snapshot(
        self,
        portfolio_id: str,
        total_value: float,
        cash: float,
        invested: float,
        realized_pnl_total: float,
        day_change: float,
        open_positions: int,
        timestamp: Optional[datetime] = None,
    ) -> PortfolioSnapshot:
        return self.portfolio_snapshots.create(
            portfolio_id=portfolio_id,
            total_value=total_value,
            cash=cash,
            invested=invested,
            realized_pnl_total=realized_pnl_total,
            day_change=day_change,
            open_positions=open_positions,
            timestamp=to_db_time(timestamp),
        )

    def get_latest_portfolio_snapshot(self, portfolio_id: str) -> Optional[PortfolioSnapshot]:
        return self.portfolio_snapshots.get_latest(portfolio_id)
