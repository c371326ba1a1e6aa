"""
API dependency wiring.

Gateways and market-data sources are process-wide singletons; services and
the trading engine are built per request around a database session.

Without Alpaca credentials stocks trade against the paper gateway. Without
Gemini credentials crypto market data is simulated and crypto trading
reports itself as not configured.
"""
import logging
import threading
from typing import Dict, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from config.risk_profiles import RiskManagementParams, SignalRiskParameters
from config.settings import get_settings, has_alpaca_credentials, has_gemini_credentials
from engine.models import AssetType
from engine.signals import SignalGenerator
from engine.trading_engine import SweepLock, TradingEngine
from services.broker import ExecutionGateway, PaperGateway
from services.market_data import MarketDataSource, PaperMarketData
from services.portfolio import PortfolioService
from services.signal_service import SignalService
from storage.database import get_db
from storage.service import StorageService

logger = logging.getLogger(__name__)

_state_lock = threading.Lock()
_gateways: Optional[Dict[AssetType, ExecutionGateway]] = None
_market_data: Optional[Dict[AssetType, MarketDataSource]] = None
_gemini_client = None
_sweep_locks: Dict[str, SweepLock] = {}


def _get_gemini_client():
    global _gemini_client
    if _gemini_client is None:
        from integrations.gemini_client import GeminiClient
        settings = get_settings()
        _gemini_client = GeminiClient(
            api_key=settings.gemini_api_key,
            api_secret=settings.gemini_api_secret,
            sandbox=settings.gemini_sandbox,
            timeout=settings.gateway_timeout_seconds,
            max_attempts=settings.gateway_max_attempts,
            backoff_seconds=settings.gateway_backoff_seconds,
        )
    return _gemini_client


def get_market_data() -> Dict[AssetType, MarketDataSource]:
    """Market-data sources per asset type."""
    global _market_data
    with _state_lock:
        if _market_data is not None:
            return _market_data
        settings = get_settings()
        paper = PaperMarketData()
        sources: Dict[AssetType, MarketDataSource] = {AssetType.STOCK: paper, AssetType.CRYPTO: paper}

        if has_alpaca_credentials():
            from integrations.alpaca_broker import AlpacaMarketData
            sources[AssetType.STOCK] = AlpacaMarketData(
                api_key=settings.alpaca_api_key,
                secret_key=settings.alpaca_secret_key,
                max_attempts=settings.gateway_max_attempts,
                backoff_seconds=settings.gateway_backoff_seconds,
            )
        if has_gemini_credentials():
            from integrations.gemini_client import GeminiMarketData
            sources[AssetType.CRYPTO] = GeminiMarketData(_get_gemini_client())

        _market_data = sources
        return _market_data


def get_gateways() -> Dict[AssetType, ExecutionGateway]:
    """Execution gateways per asset type."""
    global _gateways
    market_data = get_market_data()
    with _state_lock:
        if _gateways is not None:
            return _gateways
        settings = get_settings()

        if has_alpaca_credentials():
            from integrations.alpaca_broker import AlpacaGateway
            stock: ExecutionGateway = AlpacaGateway(
                api_key=settings.alpaca_api_key,
                secret_key=settings.alpaca_secret_key,
                paper=settings.alpaca_paper,
                max_attempts=settings.gateway_max_attempts,
                backoff_seconds=settings.gateway_backoff_seconds,
            )
        else:
            logger.info("Alpaca credentials not set; stocks use the paper gateway")
            stock = PaperGateway(market_data=market_data[AssetType.STOCK])

        if has_gemini_credentials():
            from integrations.gemini_client import GeminiGateway
            crypto: ExecutionGateway = GeminiGateway(_get_gemini_client())
        else:
            crypto = PaperGateway(market_data=market_data[AssetType.CRYPTO], configured=False)

        _gateways = {AssetType.STOCK: stock, AssetType.CRYPTO: crypto}
        return _gateways


async def close_gateways() -> None:
    """Release network clients and drop cached singletons."""
    global _gateways, _market_data, _gemini_client
    client = _gemini_client
    with _state_lock:
        _gateways = None
        _market_data = None
        _gemini_client = None
    if client is not None:
        await client.aclose()


def get_portfolio_service(db: Session = Depends(get_db)) -> PortfolioService:
    return PortfolioService(StorageService(db), market_data=get_market_data())


def build_signal_service(portfolio_service: PortfolioService) -> SignalService:
    """Signal service around a portfolio store, configured from settings."""
    settings = get_settings()
    return SignalService(
        portfolio_service,
        market_data=get_market_data(),
        generator=SignalGenerator(risk_params=SignalRiskParameters.from_settings(settings)),
        history_days=settings.history_days,
    )


def get_signal_service(
    portfolio_service: PortfolioService = Depends(get_portfolio_service),
) -> SignalService:
    return build_signal_service(portfolio_service)


def build_trading_engine(portfolio_service: PortfolioService) -> TradingEngine:
    """Trading engine around a portfolio store, using the shared gateways."""
    settings = get_settings()
    gateways = get_gateways()
    return TradingEngine(
        portfolio_store=portfolio_service,
        stock_gateway=gateways[AssetType.STOCK],
        crypto_gateway=gateways[AssetType.CRYPTO],
        market_data=get_market_data(),
        risk_params=RiskManagementParams.from_settings(settings),
        gateway_timeout=settings.gateway_timeout_seconds,
        automation_window_hours=settings.automation_window_hours,
        automation_min_confidence=settings.automation_min_confidence,
        sweep_locks=_sweep_locks,
    )


def get_trading_engine(
    portfolio_service: PortfolioService = Depends(get_portfolio_service),
) -> TradingEngine:
    return build_trading_engine(portfolio_service)
