"""
Database models for SignalDesk.
Defines the schema for portfolios, positions, trades, trading signals and
portfolio performance snapshots.
"""
import uuid

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, Enum as SQLEnum, JSON, ForeignKey
)
from sqlalchemy.sql import func
import enum

from storage.database import Base


# Enums for type safety
class AssetTypeEnum(str, enum.Enum):
    """Asset class enumeration."""
    STOCK = "stock"
    CRYPTO = "crypto"


class TradeActionEnum(str, enum.Enum):
    """Trade side enumeration."""
    BUY = "buy"
    SELL = "sell"


class SignalActionEnum(str, enum.Enum):
    """Signal direction enumeration."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class OrderTypeEnum(str, enum.Enum):
    """Order type enumeration."""
    MARKET = "market"
    LIMIT = "limit"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class PortfolioModeEnum(str, enum.Enum):
    """Portfolio trading mode."""
    PAPER = "paper"
    LIVE = "live"


def _new_uuid() -> str:
    return str(uuid.uuid4())


# Database Models

class Portfolio(Base):
    """
    Portfolio model - a user's cash account and its cached valuation.
    """
    __tablename__ = "portfolios"

    id = Column(String(36), primary_key=True, default=_new_uuid)
    user_id = Column(String(100), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    mode = Column(SQLEnum(PortfolioModeEnum), nullable=False, default=PortfolioModeEnum.PAPER)
    initial_cash = Column(Float, nullable=False, default=0.0)
    cash_balance = Column(Float, nullable=False, default=0.0)
    total_value = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, default=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class Position(Base):
    """
    Position model - one open holding per portfolio/symbol/asset type.
    """
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, index=True)
    portfolio_id = Column(String(36), ForeignKey("portfolios.id"), nullable=False, index=True)
    symbol = Column(String(20), nullable=False, index=True)
    asset_type = Column(SQLEnum(AssetTypeEnum), nullable=False)
    quantity = Column(Float, nullable=False, default=0.0)
    average_price = Column(Float, nullable=False, default=0.0)
    realized_pnl = Column(Float, default=0.0)

    # Status tracking
    is_open = Column(Boolean, default=True, index=True)
    opened_at = Column(DateTime, default=func.now(), nullable=False)
    closed_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class Trade(Base):
    """
    Trade model - append-only log of broker fills.
    """
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    portfolio_id = Column(String(36), ForeignKey("portfolios.id"), nullable=False, index=True)
    user_id = Column(String(100), nullable=True, index=True)
    signal_id = Column(String(100), nullable=True, index=True)
    external_order_id = Column(String(100), nullable=True)  # Broker order ID

    symbol = Column(String(20), nullable=False, index=True)
    asset_type = Column(SQLEnum(AssetTypeEnum), nullable=False)
    action = Column(SQLEnum(TradeActionEnum), nullable=False)
    order_type = Column(SQLEnum(OrderTypeEnum), nullable=False)

    # Trade details
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    fees = Column(Float, default=0.0)
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    realized_pnl = Column(Float, nullable=True)
    status = Column(String(20), nullable=False, default="executed")

    # Timestamps
    executed_at = Column(DateTime, default=func.now(), nullable=False, index=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)


class TradingSignalRecord(Base):
    """
    Trading signal model - append-only history of generated signals.
    """
    __tablename__ = "trading_signals"

    id = Column(String(100), primary_key=True)
    user_id = Column(String(100), nullable=True, index=True)
    symbol = Column(String(20), nullable=False, index=True)
    asset_type = Column(SQLEnum(AssetTypeEnum), nullable=False)
    action = Column(SQLEnum(SignalActionEnum), nullable=False, index=True)
    confidence = Column(Float, nullable=False, index=True)
    price = Column(Float, nullable=False)
    target_price = Column(Float, nullable=True)
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    suggested_quantity = Column(Integer, nullable=True)
    is_valid = Column(Boolean, default=True)

    # Serialized analysis payloads
    reasoning = Column(JSON, nullable=False, default=list)
    indicators = Column(JSON, nullable=True)
    strategies = Column(JSON, nullable=False, default=list)

    generated_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)


class PortfolioSnapshot(Base):
    """
    Portfolio snapshot model - recomputed performance points.
    """
    __tablename__ = "portfolio_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    portfolio_id = Column(String(36), ForeignKey("portfolios.id"), nullable=False, index=True)
    timestamp = Column(DateTime, default=func.now(), nullable=False, index=True)
    total_value = Column(Float, nullable=False, default=0.0)
    cash = Column(Float, nullable=False, default=0.0)
    invested = Column(Float, nullable=False, default=0.0)
    realized_pnl_total = Column(Float, nullable=False, default=0.0)
    day_change = Column(Float, nullable=False, default=0.0)
    open_positions = Column(Integer, nullable=False, default=0)
