"""
Configuration module for the SignalDesk backend.

Provides settings management using pydantic-settings.
Supports loading from environment variables and .env files.
"""

from .settings import (
    Settings,
    get_settings,
    reset_settings,
    has_alpaca_credentials,
    has_gemini_credentials,
)
from .paths import (
    DATA_DIR_ENV,
    resolve_app_data_dir,
    default_database_url,
    default_log_directory,
)
from .risk_profiles import RiskManagementParams, SignalRiskParameters, StrategyWeights

__all__ = [
    "Settings",
    "get_settings",
    "reset_settings",
    "has_alpaca_credentials",
    "has_gemini_credentials",
    "DATA_DIR_ENV",
    "resolve_app_data_dir",
    "default_database_url",
    "default_log_directory",
    "RiskManagementParams",
    "SignalRiskParameters",
    "StrategyWeights",
]
