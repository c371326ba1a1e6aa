"""
Storage module - Database persistence layer.
Provides models, repositories, and services for data storage.
"""
from storage.database import Base, get_db, init_db, SessionLocal
from storage.models import (
    Portfolio, Position, Trade, TradingSignalRecord, PortfolioSnapshot,
    AssetTypeEnum, TradeActionEnum, SignalActionEnum, OrderTypeEnum, PortfolioModeEnum,
)
from storage.repositories import (
    PortfolioRepository, PositionRepository, TradeRepository,
    SignalRepository, PortfolioSnapshotRepository,
)
from storage.service import StorageService

__all__ = [
    # Database
    "Base",
    "get_db",
    "init_db",
    "SessionLocal",
    # Models
    "Portfolio",
    "Position",
    "Trade",
    "TradingSignalRecord",
    "PortfolioSnapshot",
    # Enums
    "AssetTypeEnum",
    "TradeActionEnum",
    "SignalActionEnum",
    "OrderTypeEnum",
    "PortfolioModeEnum",
    # Repositories
    "PortfolioRepository",
    "PositionRepository",
    "TradeRepository",
    "SignalRepository",
    "PortfolioSnapshotRepository",
    # Service
    "StorageService",
]
