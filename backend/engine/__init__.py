"""
Trading engine module.

Core components:
- Indicator engine
- Signal generator and strategy set
- Risk management
- Trade execution and automated trading
"""

from engine.indicators import generate_indicators, get_latest_indicators, validate_data_sufficiency
from engine.signals import STRATEGIES, SignalGenerator, calculate_position_size
from engine.risk_manager import RiskManager
from engine.trading_engine import TradingEngine

__all__ = [
    "generate_indicators",
    "get_latest_indicators",
    "validate_data_sufficiency",
    "STRATEGIES",
    "SignalGenerator",
    "calculate_position_size",
    "RiskManager",
    "TradingEngine",
]
