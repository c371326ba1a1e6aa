"""
API Routes.
Defines all REST API endpoints for SignalDesk.
"""
from datetime import timezone
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Query

from engine.indicators import MIN_BARS_FOR_INDICATORS
from engine.models import AssetType, OrderCancelResult, TradeParams, TradeResult, TradeState, TradingSignal
from engine.trading_engine import TradingEngine
from services.portfolio import PortfolioNotFoundError, PortfolioService
from services.signal_service import SignalOutcome, SignalService
from storage.models import Portfolio as DBPortfolio, Trade as DBTrade

from .dependencies import get_portfolio_service, get_signal_service, get_trading_engine
from .models import (
    AutomatedTradeOutcomeResponse,
    AutomatedTradingRequest,
    AutomatedTradingResponse,
    BatchSignalRequest,
    BatchSignalResponse,
    DataSufficiencyResponse,
    IndicatorAnalysisResponse,
    OrderCancelResponse,
    PerformanceResponse,
    PortfolioCreateRequest,
    PortfolioMetricsResponse,
    PortfolioResponse,
    PortfoliosResponse,
    PositionResponse,
    PositionsResponse,
    SignalGenerationResponse,
    SignalRequest,
    SignalResponse,
    SignalsListResponse,
    SignalValidationResponse,
    TradeHistoryItem,
    TradeHistoryResponse,
    TradeRequest,
    TradeResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

RISK_VIOLATION_PREFIX = "Risk management violation"


# ============================================================================
# Mapping helpers
# ============================================================================

def _signal_response(signal: TradingSignal) -> SignalResponse:
    return SignalResponse(**signal.to_dict())


def _outcome_response(outcome: SignalOutcome) -> SignalGenerationResponse:
    validation = None
    if outcome.validation is not None:
        validation = SignalValidationResponse(
            valid=outcome.validation.valid,
            issues=list(outcome.validation.issues),
            recommendations=list(outcome.validation.recommendations),
        )
    return SignalGenerationResponse(
        success=outcome.success,
        symbol=outcome.symbol,
        asset_type=outcome.asset_type,
        signal=_signal_response(outcome.signal) if outcome.signal else None,
        validation=validation,
        signal_strength=outcome.signal_strength,
        data_points=outcome.data_points,
        error=outcome.error,
    )


def _trade_status_code(result: TradeResult) -> int:
    """HTTP status for a failed trade."""
    if result.state == TradeState.GATEWAY_ERROR:
        return 502
    if (result.error or "").startswith(RISK_VIOLATION_PREFIX):
        return 422
    return 400


def _cancel_status_code(result: OrderCancelResult) -> int:
    """HTTP status for a failed cancel; broker 4xx other than 404 maps to 400."""
    if result.status_code == 404:
        return 404
    if result.status_code is not None and 400 <= result.status_code < 500:
        return 400
    return 502


def _portfolio_response(portfolio: DBPortfolio) -> PortfolioResponse:
    return PortfolioResponse(
        id=portfolio.id,
        user_id=portfolio.user_id,
        name=portfolio.name,
        mode=portfolio.mode.value,
        initial_cash=portfolio.initial_cash,
        cash_balance=portfolio.cash_balance,
        total_value=portfolio.total_value,
        is_active=bool(portfolio.is_active),
        created_at=portfolio.created_at,
    )


def _trade_item(trade: DBTrade) -> TradeHistoryItem:
    executed_at = trade.executed_at
    if executed_at is not None and executed_at.tzinfo is None:
        executed_at = executed_at.replace(tzinfo=timezone.utc)
    return TradeHistoryItem(
        id=trade.id,
        symbol=trade.symbol,
        asset_type=trade.asset_type.value,
        action=trade.action.value,
        order_type=trade.order_type.value,
        quantity=trade.quantity,
        price=trade.price,
        fees=trade.fees or 0.0,
        realized_pnl=trade.realized_pnl,
        status=trade.status,
        signal_id=trade.signal_id,
        external_order_id=trade.external_order_id,
        executed_at=executed_at,
    )


# ============================================================================
# Signal Endpoints
# ============================================================================

@router.post("/signals", response_model=SignalGenerationResponse)
async def generate_signal(
    request: SignalRequest,
    signal_service: SignalService = Depends(get_signal_service),
):
    """
    Generate a trading signal for one symbol.

    Fetches price history, computes indicators, runs the strategy set and
    stores the resulting signal.

    Raises:
        HTTPException: 400 for invalid input or insufficient data, 404 for an
            unknown portfolio
    """
    try:
        outcome = await signal_service.generate_for_symbol(
            request.symbol,
            request.asset_type,
            user_id=request.user_id,
            portfolio_id=request.portfolio_id,
            weights=request.weights,
            timeframe=request.timeframe,
        )
    except PortfolioNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not outcome.success:
        raise HTTPException(status_code=400, detail=outcome.error)
    return _outcome_response(outcome)


@router.post("/signals/batch", response_model=BatchSignalResponse)
async def generate_signals_batch(
    request: BatchSignalRequest,
    signal_service: SignalService = Depends(get_signal_service),
):
    """Generate signals for several symbols; failures are reported per symbol."""
    outcomes = await signal_service.generate_batch(
        [(item.symbol, item.asset_type) for item in request.symbols],
        user_id=request.user_id,
        portfolio_id=request.portfolio_id,
        weights=request.weights,
    )
    results = [_outcome_response(outcome) for outcome in outcomes]
    successful = sum(1 for result in results if result.success)
    return BatchSignalResponse(
        results=results,
        total=len(results),
        successful=successful,
        failed=len(results) - successful,
    )


@router.get("/signals", response_model=SignalsListResponse)
async def list_signals(
    limit: int = Query(default=50, ge=1, le=500),
    symbol: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
    portfolio_service: PortfolioService = Depends(get_portfolio_service),
):
    """Recent signals, newest first."""
    signals = portfolio_service.get_recent_signals(
        limit=limit,
        symbol=symbol.strip().upper() if symbol else None,
        user_id=user_id,
    )
    return SignalsListResponse(
        signals=[_signal_response(signal) for signal in signals],
        total=len(signals),
    )


@router.get("/analysis/indicators", response_model=IndicatorAnalysisResponse)
async def analyze_indicators(
    symbol: str = Query(..., min_length=1, max_length=15),
    asset_type: AssetType = Query(default=AssetType.STOCK),
    include_history: bool = Query(default=False),
    signal_service: SignalService = Depends(get_signal_service),
):
    """Latest indicator values and a data-sufficiency report for a symbol."""
    try:
        analysis = await signal_service.analyze_indicators(
            symbol, asset_type, include_history=include_history,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if analysis.indicators is None:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Insufficient data for analysis: {analysis.data_points} bars available, "
                f"{MIN_BARS_FOR_INDICATORS} required"
            ),
        )
    return IndicatorAnalysisResponse(
        symbol=analysis.symbol,
        asset_type=analysis.asset_type,
        data_points=analysis.data_points,
        indicators=analysis.indicators.to_dict(),
        sufficiency=DataSufficiencyResponse(
            valid=analysis.sufficiency.valid,
            missing=list(analysis.sufficiency.missing),
            recommendations=list(analysis.sufficiency.recommendations),
        ),
        history=[item.to_dict() for item in analysis.history],
    )


# ============================================================================
# Trading Endpoints
# ============================================================================

@router.post("/trading/execute", response_model=TradeResponse)
async def execute_trade(
    request: TradeRequest,
    engine: TradingEngine = Depends(get_trading_engine),
):
    """
    Execute a trade.

    This endpoint:
    1. Validates the request and the account
    2. Applies risk management gates
    3. Submits the order to the gateway for the asset class
    4. Records the fill in the portfolio

    Raises:
        HTTPException: 400 validation, 422 risk violation, 502 gateway failure
    """
    params = TradeParams(
        symbol=request.symbol,
        asset_type=request.asset_type,
        action=request.action,
        quantity=request.quantity,
        user_id=request.user_id,
        portfolio_id=request.portfolio_id,
        order_type=request.order_type,
        price=request.price,
        stop_loss=request.stop_loss,
        take_profit=request.take_profit,
        signal_id=request.signal_id,
    )
    result = await engine.execute_trade(params, timeout=request.timeout_seconds)
    if not result.success:
        raise HTTPException(status_code=_trade_status_code(result), detail=result.error)

    return TradeResponse(
        success=True,
        state=result.state,
        timestamp=result.timestamp,
        order_id=result.order_id,
        executed_price=result.executed_price,
        executed_quantity=result.executed_quantity,
        fees=result.fees,
        warnings=list(result.warnings),
    )


@router.post("/trading/automated", response_model=AutomatedTradingResponse)
async def run_automated_trading(
    request: AutomatedTradingRequest,
    engine: TradingEngine = Depends(get_trading_engine),
    portfolio_service: PortfolioService = Depends(get_portfolio_service),
):
    """Execute recent high-confidence buy signals for a portfolio."""
    try:
        portfolio_service.get_portfolio(request.portfolio_id, request.user_id)
    except PortfolioNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    summary = await engine.process_automated_trading(request.user_id, request.portfolio_id)
    if summary.error:
        raise HTTPException(status_code=502, detail=summary.error)

    return AutomatedTradingResponse(
        success=summary.success,
        portfolio_id=summary.portfolio_id,
        processed=summary.processed,
        executed=summary.executed,
        failed=summary.failed,
        results=[
            AutomatedTradeOutcomeResponse(
                signal_id=outcome.signal_id,
                symbol=outcome.symbol,
                success=outcome.success,
                order_id=outcome.order_id,
                quantity=outcome.quantity,
                error=outcome.error,
            )
            for outcome in summary.results
        ],
    )


@router.delete("/trading/orders/{order_id}", response_model=OrderCancelResponse)
async def cancel_order(
    order_id: str,
    asset_type: AssetType = Query(AssetType.STOCK),
    engine: TradingEngine = Depends(get_trading_engine),
):
    """
    Cancel an open order on the gateway for its asset class.

    Raises:
        HTTPException: 400 bad request, 404 unknown order, 502 gateway failure
    """
    result = await engine.cancel_order(order_id, asset_type)
    if not result.success:
        raise HTTPException(status_code=_cancel_status_code(result), detail=result.error)
    return OrderCancelResponse(
        success=True,
        order_id=result.order_id,
        asset_type=result.asset_type,
        timestamp=result.timestamp,
    )


@router.get("/trading/metrics", response_model=PortfolioMetricsResponse)
async def get_trading_metrics(
    user_id: str = Query(..., min_length=1),
    portfolio_id: str = Query(..., min_length=1),
    engine: TradingEngine = Depends(get_trading_engine),
):
    """Current portfolio metrics used by the risk gates."""
    try:
        metrics = await engine.get_portfolio_metrics(user_id, portfolio_id)
    except PortfolioNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return PortfolioMetricsResponse(
        total_value=metrics.total_value,
        total_cash=metrics.total_cash,
        total_invested=metrics.total_invested,
        unrealized_pnl=metrics.unrealized_pnl,
        realized_pnl=metrics.realized_pnl,
        day_change=metrics.day_change,
        day_change_percent=metrics.day_change_percent,
        open_positions=metrics.open_positions,
        today_trades=metrics.today_trades,
    )


# ============================================================================
# Portfolio Endpoints
# ============================================================================

@router.post("/portfolios", response_model=PortfolioResponse, status_code=201)
async def create_portfolio(
    request: PortfolioCreateRequest,
    portfolio_service: PortfolioService = Depends(get_portfolio_service),
):
    """Create a funded portfolio."""
    try:
        portfolio = portfolio_service.create_portfolio(
            request.user_id, request.name, request.initial_cash, request.mode,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _portfolio_response(portfolio)


@router.get("/portfolios", response_model=PortfoliosResponse)
async def list_portfolios(
    user_id: str = Query(..., min_length=1),
    portfolio_service: PortfolioService = Depends(get_portfolio_service),
):
    portfolios = portfolio_service.list_portfolios(user_id)
    return PortfoliosResponse(
        portfolios=[_portfolio_response(portfolio) for portfolio in portfolios],
        total=len(portfolios),
    )


@router.get("/portfolios/{portfolio_id}/positions", response_model=PositionsResponse)
async def get_positions(
    portfolio_id: str,
    user_id: Optional[str] = Query(default=None),
    portfolio_service: PortfolioService = Depends(get_portfolio_service),
):
    """Open positions marked to market."""
    try:
        positions = await portfolio_service.get_positions(portfolio_id, user_id)
    except PortfolioNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return PositionsResponse(
        positions=[PositionResponse(**position) for position in positions],
        total_value=sum(position["market_value"] for position in positions),
    )


@router.get("/portfolios/{portfolio_id}/trades", response_model=TradeHistoryResponse)
async def get_trades(
    portfolio_id: str,
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    portfolio_service: PortfolioService = Depends(get_portfolio_service),
):
    """Trade history, newest first."""
    try:
        trades, total = portfolio_service.get_trade_history(
            portfolio_id, limit=limit, offset=offset, user_id=user_id,
        )
    except PortfolioNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return TradeHistoryResponse(
        trades=[_trade_item(trade) for trade in trades],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/portfolios/{portfolio_id}/performance", response_model=PerformanceResponse)
async def get_performance(
    portfolio_id: str,
    user_id: Optional[str] = Query(default=None),
    portfolio_service: PortfolioService = Depends(get_portfolio_service),
):
    try:
        performance = await portfolio_service.calculate_performance(portfolio_id, user_id)
    except PortfolioNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return PerformanceResponse(**performance)
