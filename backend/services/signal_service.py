"""
Signal Service.

Fetches price history, computes indicators, generates and validates trading
signals, and appends them to the signal history used by automated trading.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from config.risk_profiles import SignalRiskParameters
from engine.errors import DataUnavailableError, GatewayError
from engine.indicators import (
    MIN_BARS_FOR_INDICATORS,
    generate_indicators,
    get_latest_indicators,
    validate_data_sufficiency,
)
from engine.models import (
    AssetType,
    DataSufficiency,
    IndicatorSet,
    PriceBar,
    SignalValidation,
    TradingSignal,
    utc_now,
)
from engine.signals import SignalGenerator
from services.market_data import MarketDataSource
from services.portfolio import PortfolioService

logger = logging.getLogger(__name__)


def signal_strength(confidence: float) -> str:
    if confidence > 0.7:
        return "Strong"
    if confidence > 0.5:
        return "Moderate"
    return "Weak"


@dataclass
class SignalOutcome:
    """Result of generating a signal for one symbol."""

    symbol: str
    asset_type: AssetType
    success: bool
    signal: Optional[TradingSignal] = None
    validation: Optional[SignalValidation] = None
    error: Optional[str] = None
    insufficient_data: bool = False
    data_points: int = 0

    @property
    def signal_strength(self) -> Optional[str]:
        return signal_strength(self.signal.confidence) if self.signal else None


@dataclass
class IndicatorAnalysis:
    symbol: str
    asset_type: AssetType
    data_points: int
    indicators: Optional[IndicatorSet]
    sufficiency: DataSufficiency
    history: List[IndicatorSet] = field(default_factory=list)


class SignalService:
    """
    Signal generation over live market data.

    One MarketDataSource per asset type supplies bars and quotes; generated
    signals are persisted through the portfolio service.
    """

    def __init__(
        self,
        portfolio_service: PortfolioService,
        market_data: Mapping[AssetType, MarketDataSource],
        generator: Optional[SignalGenerator] = None,
        history_days: int = 100,
    ):
        """
        Initialize signal service.

        Args:
            portfolio_service: Signal history and portfolio metrics
            market_data: Bar and quote sources per asset type
            generator: Signal generator (defaults to standard weights)
            history_days: Days of daily bars fetched per signal
        """
        self.portfolio_service = portfolio_service
        self.market_data: Dict[AssetType, MarketDataSource] = dict(market_data)
        self.generator = generator or SignalGenerator()
        self.history_days = history_days

    def _source(self, asset_type: AssetType) -> MarketDataSource:
        source = self.market_data.get(asset_type)
        if source is None:
            raise DataUnavailableError(f"No market data source for {asset_type.value}")
        return source

    async def _fetch_bars(self, symbol: str, asset_type: AssetType, timeframe: str) -> List[PriceBar]:
        start = utc_now() - timedelta(days=self.history_days)
        return await self._source(asset_type).get_historical_bars(symbol, timeframe, start=start)

    async def _current_price(self, symbol: str, asset_type: AssetType, bars: Sequence[PriceBar]) -> float:
        try:
            quote = await self._source(asset_type).get_latest_quote(symbol)
        except GatewayError as exc:
            logger.warning("Quote unavailable for %s, using last close: %s", symbol, exc)
            return bars[-1].close
        return quote.price if quote.price > 0 else bars[-1].close

    async def generate_for_symbol(
        self,
        symbol: str,
        asset_type: AssetType = AssetType.STOCK,
        user_id: Optional[str] = None,
        portfolio_id: Optional[str] = None,
        weights: Optional[Dict[str, float]] = None,
        risk_params: Optional[SignalRiskParameters] = None,
        timeframe: str = "1Day",
        persist: bool = True,
    ) -> SignalOutcome:
        """
        Generate, validate and persist a signal for one symbol.

        Missing or short history is reported as an insufficient-data outcome.

        Raises:
            ValueError: Invalid symbol or weight override
            PortfolioNotFoundError: portfolio_id given but not found
        """
        symbol = (symbol or "").strip().upper()
        if not symbol:
            raise ValueError("Symbol is required")
        asset_type = AssetType(asset_type)

        try:
            bars = await self._fetch_bars(symbol, asset_type, timeframe)
        except DataUnavailableError as exc:
            logger.warning("Market data unavailable for %s: %s", symbol, exc)
            return SignalOutcome(
                symbol=symbol, asset_type=asset_type, success=False,
                error=f"Market data unavailable for {symbol}", insufficient_data=True,
            )

        if len(bars) < MIN_BARS_FOR_INDICATORS:
            return SignalOutcome(
                symbol=symbol, asset_type=asset_type, success=False,
                error=(
                    f"Insufficient data for analysis: {len(bars)} bars available, "
                    f"{MIN_BARS_FOR_INDICATORS} required"
                ),
                insufficient_data=True, data_points=len(bars),
            )

        indicators = get_latest_indicators(bars, symbol=symbol)
        current_price = await self._current_price(symbol, asset_type, bars)

        portfolio_value = 0.0
        if portfolio_id:
            metrics = await self.portfolio_service.get_metrics(user_id, portfolio_id)
            portfolio_value = metrics.total_value

        signal = self.generator.generate_signal(
            symbol=symbol,
            asset_type=asset_type,
            indicators=indicators,
            series=bars,
            current_price=current_price,
            portfolio_value=portfolio_value,
            weights=weights,
            risk_params=risk_params,
        )
        validation = self.generator.validate_signal(signal)

        if persist:
            self.portfolio_service.save_signal(signal, validation, user_id=user_id)

        logger.info(
            "Signal %s for %s: %s (confidence %.2f, valid=%s)",
            signal.id, symbol, signal.action.value, signal.confidence, validation.valid,
        )
        return SignalOutcome(
            symbol=symbol,
            asset_type=asset_type,
            success=True,
            signal=signal,
            validation=validation,
            data_points=len(bars),
        )

    async def generate_batch(
        self,
        requests: Sequence[Tuple[str, AssetType]],
        user_id: Optional[str] = None,
        portfolio_id: Optional[str] = None,
        weights: Optional[Dict[str, float]] = None,
    ) -> List[SignalOutcome]:
        """Generate signals for many symbols; each symbol succeeds or fails on its own."""

        async def _one(symbol: str, asset_type: AssetType) -> SignalOutcome:
            try:
                return await self.generate_for_symbol(
                    symbol, asset_type, user_id=user_id, portfolio_id=portfolio_id, weights=weights,
                )
            except Exception as exc:
                logger.exception("Signal generation failed for %s", symbol)
                return SignalOutcome(
                    symbol=str(symbol).upper(), asset_type=AssetType(asset_type),
                    success=False, error=str(exc),
                )

        return list(await asyncio.gather(*(_one(symbol, asset) for symbol, asset in requests)))

    async def analyze_indicators(
        self,
        symbol: str,
        asset_type: AssetType = AssetType.STOCK,
        timeframe: str = "1Day",
        include_history: bool = False,
    ) -> IndicatorAnalysis:
        """Latest indicator set plus a data-sufficiency report for a symbol."""
        symbol = (symbol or "").strip().upper()
        if not symbol:
            raise ValueError("Symbol is required")
        asset_type = AssetType(asset_type)

        try:
            bars = await self._fetch_bars(symbol, asset_type, timeframe)
        except DataUnavailableError as exc:
            logger.warning("Market data unavailable for %s: %s", symbol, exc)
            bars = []

        history: List[IndicatorSet] = []
        latest = None
        if len(bars) >= MIN_BARS_FOR_INDICATORS:
            if include_history:
                history = generate_indicators(bars, symbol=symbol)
                latest = history[-1] if history else None
            else:
                latest = get_latest_indicators(bars, symbol=symbol)

        return IndicatorAnalysis(
            symbol=symbol,
            asset_type=asset_type,
            data_points=len(bars),
            indicators=latest,
            sufficiency=validate_data_sufficiency(bars),
            history=history,
        )
