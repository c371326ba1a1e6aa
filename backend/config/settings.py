"""
Application Settings and Configuration.

Loads configuration from environment variables and config files.
Supports Alpaca (stocks) and Gemini (crypto) credentials, risk defaults and
gateway tuning.
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from .paths import default_database_url, default_log_directory


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables:
        ALPACA_API_KEY: Alpaca API key (paper or live)
        ALPACA_SECRET_KEY: Alpaca secret key
        ALPACA_PAPER: Use paper trading (default: true)
        GEMINI_API_KEY: Gemini exchange API key
        GEMINI_API_SECRET: Gemini exchange API secret
        GEMINI_SANDBOX: Use the Gemini sandbox (default: true)
        DATABASE_URL: Database connection URL (default: sqlite)
    """

    # Alpaca Configuration
    alpaca_api_key: Optional[str] = Field(default=None, alias="ALPACA_API_KEY")
    alpaca_secret_key: Optional[str] = Field(default=None, alias="ALPACA_SECRET_KEY")
    alpaca_paper: bool = Field(default=True, alias="ALPACA_PAPER")

    # Gemini Configuration
    gemini_api_key: Optional[str] = Field(default=None, alias="GEMINI_API_KEY")
    gemini_api_secret: Optional[str] = Field(default=None, alias="GEMINI_API_SECRET")
    gemini_sandbox: bool = Field(default=True, alias="GEMINI_SANDBOX")

    @field_validator(
        "alpaca_api_key",
        "alpaca_secret_key",
        "gemini_api_key",
        "gemini_api_secret",
        mode="before",
    )
    @classmethod
    def strip_credential(cls, v):
        """Strip whitespace from credentials to prevent authentication failures."""
        return v.strip() if isinstance(v, str) else v

    # Database Configuration
    database_url: str = Field(
        default=default_database_url(),
        alias="DATABASE_URL"
    )

    # Application Configuration
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_directory: str = Field(default=str(default_log_directory()), alias="SIGNALDESK_LOG_DIR")
    log_retention_days: int = Field(default=30, alias="SIGNALDESK_LOG_RETENTION_DAYS")

    # Signal generation
    min_confidence: float = Field(default=0.65, alias="SIGNALDESK_MIN_CONFIDENCE")
    history_days: int = Field(default=100, alias="SIGNALDESK_HISTORY_DAYS")

    # Trading risk defaults (percentages)
    max_position_size: float = Field(default=10.0, alias="SIGNALDESK_MAX_POSITION_SIZE")
    max_daily_loss: float = Field(default=5.0, alias="SIGNALDESK_MAX_DAILY_LOSS")
    max_open_positions: int = Field(default=10, alias="SIGNALDESK_MAX_OPEN_POSITIONS")
    risk_per_trade: float = Field(default=2.0, alias="SIGNALDESK_RISK_PER_TRADE")

    # Automated trading sweep
    automation_window_hours: int = Field(default=24, alias="SIGNALDESK_AUTOMATION_WINDOW_HOURS")
    automation_min_confidence: float = Field(default=0.7, alias="SIGNALDESK_AUTOMATION_MIN_CONFIDENCE")

    # Execution / market-data gateways
    gateway_timeout_seconds: float = Field(default=30.0, alias="SIGNALDESK_GATEWAY_TIMEOUT_SECONDS")
    gateway_max_attempts: int = Field(default=3, alias="SIGNALDESK_GATEWAY_MAX_ATTEMPTS")
    gateway_backoff_seconds: float = Field(default=1.0, alias="SIGNALDESK_GATEWAY_BACKOFF_SECONDS")

    # API rate limiting (per client address, per process)
    rate_limit: str = Field(default="120/minute", alias="SIGNALDESK_RATE_LIMIT")
    rate_limit_enabled: bool = Field(default=True, alias="SIGNALDESK_RATE_LIMIT_ENABLED")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None


def has_alpaca_credentials() -> bool:
    """
    Check if Alpaca credentials are configured.

    Returns:
        True if both API key and secret are set
    """
    settings = get_settings()
    return bool(settings.alpaca_api_key) and bool(settings.alpaca_secret_key)


def has_gemini_credentials() -> bool:
    """Check if Gemini API key and secret are both set."""
    settings = get_settings()
    return bool(settings.gemini_api_key) and bool(settings.gemini_api_secret)
