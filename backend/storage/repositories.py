"""
Repository classes for database CRUD operations.
Provides abstraction layer between services and database models.

Write methods take `commit`; pass commit=False to stage several writes in one
transaction and commit from the caller.
"""
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from sqlalchemy.orm import Session
from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError

from storage.models import (
    Portfolio, Position, Trade, TradingSignalRecord, PortfolioSnapshot,
    AssetTypeEnum, TradeActionEnum, SignalActionEnum, OrderTypeEnum, PortfolioModeEnum,
)


def _utc_now() -> datetime:
    """Naive UTC, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PortfolioRepository:
    """Repository for Portfolio CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: str, name: str, initial_cash: float,
               mode: PortfolioModeEnum = PortfolioModeEnum.PAPER) -> Portfolio:
        """Create a new portfolio funded with initial_cash."""
        portfolio = Portfolio(
            user_id=user_id,
            name=name,
            mode=mode,
            initial_cash=initial_cash,
            cash_balance=initial_cash,
            total_value=initial_cash,
        )
        self.db.add(portfolio)
        self.db.commit()
        self.db.refresh(portfolio)
        return portfolio

    def get_by_id(self, portfolio_id: str) -> Optional[Portfolio]:
        """Get portfolio by ID."""
        return self.db.query(Portfolio).filter(Portfolio.id == portfolio_id).first()

    def get_for_user(self, portfolio_id: str, user_id: str) -> Optional[Portfolio]:
        """Get portfolio by ID, scoped to its owner."""
        return self.db.query(Portfolio).filter(
            and_(Portfolio.id == portfolio_id, Portfolio.user_id == user_id)
        ).first()

    def get_by_user(self, user_id: str) -> List[Portfolio]:
        """Get active portfolios for a user, newest first."""
        return self.db.query(Portfolio).filter(
            and_(Portfolio.user_id == user_id, Portfolio.is_active == True)
        ).order_by(Portfolio.created_at.desc()).all()

    def lock(self, portfolio_id: str) -> Optional[Portfolio]:
        """Load a portfolio row with a row lock for the current transaction."""
        return self.db.query(Portfolio).filter(
            Portfolio.id == portfolio_id
        ).with_for_update().first()

    def update(self, portfolio: Portfolio, commit: bool = True) -> Portfolio:
        """Update an existing portfolio."""
        portfolio.updated_at = _utc_now()
        if commit:
            self.db.commit()
            self.db.refresh(portfolio)
        else:
            self.db.flush()
        return portfolio


class PositionRepository:
    """Repository for Position CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, portfolio_id: str, symbol: str, asset_type: AssetTypeEnum,
               quantity: float, average_price: float, commit: bool = True) -> Position:
        """Open a new position."""
        position = Position(
            portfolio_id=portfolio_id,
            symbol=symbol,
            asset_type=asset_type,
            quantity=quantity,
            average_price=average_price,
            is_open=True,
        )
        self.db.add(position)
        if commit:
            self.db.commit()
            self.db.refresh(position)
        else:
            self.db.flush()
        return position

    def get_open(self, portfolio_id: str, symbol: str,
                 asset_type: AssetTypeEnum) -> Optional[Position]:
        """Get the open position for a symbol in a portfolio."""
        return self.db.query(Position).filter(
            and_(
                Position.portfolio_id == portfolio_id,
                Position.symbol == symbol,
                Position.asset_type == asset_type,
                Position.is_open == True,
            )
        ).first()

    def get_all_open(self, portfolio_id: str) -> List[Position]:
        """Get all open positions with positive quantity."""
        return self.db.query(Position).filter(
            and_(
                Position.portfolio_id == portfolio_id,
                Position.is_open == True,
                Position.quantity > 0,
            )
        ).all()

    def update(self, position: Position, commit: bool = True) -> Position:
        """Update an existing position."""
        position.updated_at = _utc_now()
        if commit:
            self.db.commit()
            self.db.refresh(position)
        else:
            self.db.flush()
        return position

    def close(self, position: Position, commit: bool = True) -> Position:
        """Mark a position as closed."""
        position.is_open = False
        position.quantity = 0.0
        position.closed_at = _utc_now()
        return self.update(position, commit=commit)


class TradeRepository:
    """Repository for Trade CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, portfolio_id: str, symbol: str, asset_type: AssetTypeEnum,
               action: TradeActionEnum, order_type: OrderTypeEnum, quantity: float,
               price: float, fees: float = 0.0, executed_at: Optional[datetime] = None,
               user_id: Optional[str] = None, signal_id: Optional[str] = None,
               external_order_id: Optional[str] = None, stop_loss: Optional[float] = None,
               take_profit: Optional[float] = None, realized_pnl: Optional[float] = None,
               status: str = "executed", commit: bool = True) -> Trade:
        """Append a trade to the log."""
        trade = Trade(
            portfolio_id=portfolio_id,
            user_id=user_id,
            signal_id=signal_id,
            external_order_id=external_order_id,
            symbol=symbol,
            asset_type=asset_type,
            action=action,
            order_type=order_type,
            quantity=quantity,
            price=price,
            fees=fees,
            stop_loss=stop_loss,
            take_profit=take_profit,
            realized_pnl=realized_pnl,
            status=status,
            executed_at=executed_at or _utc_now(),
        )
        self.db.add(trade)
        if commit:
            self.db.commit()
            self.db.refresh(trade)
        else:
            self.db.flush()
        return trade

    def get_by_portfolio(self, portfolio_id: str, limit: int = 50, offset: int = 0) -> List[Trade]:
        """Get trades for a portfolio, newest first."""
        return self.db.query(Trade).filter(
            Trade.portfolio_id == portfolio_id
        ).order_by(Trade.executed_at.desc(), Trade.id.desc()).offset(offset).limit(limit).all()

    def count_by_portfolio(self, portfolio_id: str) -> int:
        """Count trades for a portfolio."""
        return self.db.query(Trade).filter(Trade.portfolio_id == portfolio_id).count()

    def get_since(self, portfolio_id: str, since: datetime) -> List[Trade]:
        """Get trades executed at or after `since`, oldest first."""
        return self.db.query(Trade).filter(
            and_(Trade.portfolio_id == portfolio_id, Trade.executed_at >= since)
        ).order_by(Trade.executed_at.asc()).all()

    def get_all_for_portfolio(self, portfolio_id: str) -> List[Trade]:
        """Get every trade for a portfolio, oldest first."""
        return self.db.query(Trade).filter(
            Trade.portfolio_id == portfolio_id
        ).order_by(Trade.executed_at.asc()).all()


class SignalRepository:
    """Repository for TradingSignalRecord operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, payload: Dict[str, Any]) -> TradingSignalRecord:
        """Persist a generated signal. A failed insert is rolled back so the session stays usable."""
        record = TradingSignalRecord(**payload)
        self.db.add(record)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(record)
        return record

    def get_by_id(self, signal_id: str) -> Optional[TradingSignalRecord]:
        """Get signal by ID."""
        return self.db.query(TradingSignalRecord).filter(TradingSignalRecord.id == signal_id).first()

    def get_recent(self, limit: int = 50, symbol: Optional[str] = None,
                   user_id: Optional[str] = None) -> List[TradingSignalRecord]:
        """Get recent signals, newest first."""
        query = self.db.query(TradingSignalRecord)
        if symbol:
            query = query.filter(TradingSignalRecord.symbol == symbol)
        if user_id:
            query = query.filter(TradingSignalRecord.user_id == user_id)
        return query.order_by(TradingSignalRecord.generated_at.desc()).limit(limit).all()

    def get_high_confidence_since(self, since: datetime, min_confidence: float,
                                  action: Optional[SignalActionEnum] = None) -> List[TradingSignalRecord]:
        """Get signals generated since `since` at or above min_confidence, strongest first."""
        query = self.db.query(TradingSignalRecord).filter(
            and_(
                TradingSignalRecord.generated_at >= since,
                TradingSignalRecord.confidence >= min_confidence,
            )
        )
        if action is not None:
            query = query.filter(TradingSignalRecord.action == action)
        return query.order_by(TradingSignalRecord.confidence.desc()).all()


class PortfolioSnapshotRepository:
    """Repository for portfolio performance snapshots."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, portfolio_id: str, total_value: float, cash: float, invested: float,
               realized_pnl_total: float, day_change: float, open_positions: int,
               timestamp: Optional[datetime] = None) -> PortfolioSnapshot:
        """Record a snapshot point."""
        snapshot = PortfolioSnapshot(
            portfolio_id=portfolio_id,
            timestamp=timestamp or _utc_now(),
            total_value=total_value,
            cash=cash,
            invested=invested,
            realized_pnl_total=realized_pnl_total,
            day_change=day_change,
            open_positions=open_positions,
        )
        self.db.add(snapshot)
        self.db.commit()
        self.db.refresh(snapshot)
        return snapshot

    def get_latest(self, portfolio_id: str) -> Optional[PortfolioSnapshot]:
        """Get the most recent snapshot for a portfolio."""
        return self.db.query(PortfolioSnapshot).filter(
            PortfolioSnapshot.portfolio_id == portfolio_id
        ).order_by(PortfolioSnapshot.timestamp.desc(), PortfolioSnapshot.id.desc()).first()

    def get_for_portfolio(self, portfolio_id: str, limit: int = 500) -> List[PortfolioSnapshot]:
        """Get snapshots for a portfolio, oldest first."""
        rows = self.db.query(PortfolioSnapshot).filter(
            PortfolioSnapshot.portfolio_id == portfolio_id
        ).order_by(PortfolioSnapshot.timestamp.desc()).limit(limit).all()
        return list(reversed(rows))
