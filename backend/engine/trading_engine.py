"""
Trading Engine.

Validates, risk-checks and executes trade requests against the execution
gateway for the trade's asset class, then records the fill in the portfolio
store.

Per-trade flow, strictly in order and short-circuiting on first failure:
    structure -> account -> buying power -> risk gates -> dispatch -> post-commit

Every failure is returned as a TradeResult; nothing raised by a collaborator
crosses execute_trade.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from config.risk_profiles import RiskManagementParams
from engine.errors import (
    AccountValidationError,
    GatewayError,
    PostCommitWarning,
    RiskViolationError,
    TradeValidationError,
)
from engine.models import (
    AssetType,
    AutomatedTradeOutcome,
    AutomatedTradingSummary,
    OrderCancelResult,
    OrderType,
    PortfolioMetrics,
    SignalAction,
    TradeAction,
    TradeParams,
    TradeRecord,
    TradeResult,
    TradeState,
    TradingSignal,
    utc_now,
)
from engine.risk_manager import RiskManager
from services.broker import (
    AccountSnapshot,
    ExecutionGateway,
    ExecutionOrderType,
    OrderFill,
    OrderSide,
    OrderSpec,
)
from services.market_data import MarketDataSource
from services.portfolio import PortfolioStore

logger = logging.getLogger(__name__)

CRYPTO_QUANTITY_DECIMALS = 8


@dataclass(frozen=True)
class _ValidatedTrade:
    """TradeParams after structural validation, with enums resolved."""

    params: TradeParams
    symbol: str
    asset_type: AssetType
    action: TradeAction
    order_type: OrderType
    quantity: float
    price: Optional[float]


def _as_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class SweepLock:
    """Per-portfolio sweep lock with a count of the sweeps holding or awaiting it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class TradingEngine:
    """
    Risk-gated trade execution.

    Collaborators are injected so they can be replaced with test doubles:
    one execution gateway per asset class, the portfolio store, and optional
    market-data sources used to price orders that arrive without a price.

    The engine holds no lock across collaborator calls and does not serialize
    concurrent trades on the same portfolio; the portfolio store applies each
    fill atomically. Only automated sweeps are serialized per portfolio.
    """

    def __init__(
        self,
        portfolio_store: PortfolioStore,
        stock_gateway: ExecutionGateway,
        crypto_gateway: ExecutionGateway,
        market_data: Optional[Mapping[AssetType, MarketDataSource]] = None,
        risk_params: Optional[RiskManagementParams] = None,
        gateway_timeout: float = 30.0,
        automation_window_hours: int = 24,
        automation_min_confidence: float = 0.7,
        sweep_locks: Optional[Dict[str, SweepLock]] = None,
    ):
        """
        Initialize trading engine.

        Args:
            portfolio_store: Metrics source and trade log
            stock_gateway: Execution gateway for stocks
            crypto_gateway: Execution gateway for crypto
            market_data: Quote sources per asset type
            risk_params: Risk gate limits
            gateway_timeout: Default deadline in seconds for order placement
            automation_window_hours: Signal look-back for automated sweeps
            automation_min_confidence: Minimum signal confidence for automated sweeps
            sweep_locks: Per-portfolio sweep locks shared across engine instances
        """
        self.portfolio_store = portfolio_store
        self.gateways: Dict[AssetType, ExecutionGateway] = {
            AssetType.STOCK: stock_gateway,
            AssetType.CRYPTO: crypto_gateway,
        }
        self.market_data: Dict[AssetType, MarketDataSource] = dict(market_data or {})
        self.risk_params = risk_params or RiskManagementParams()
        self.risk_manager = RiskManager(self.risk_params)
        self.gateway_timeout = gateway_timeout
        self.automation_window_hours = automation_window_hours
        self.automation_min_confidence = automation_min_confidence
        self._sweep_locks: Dict[str, SweepLock] = sweep_locks if sweep_locks is not None else {}

    # ------------------------------------------------------------------
    # Trade execution
    # ------------------------------------------------------------------

    async def execute_trade(self, params: TradeParams, timeout: Optional[float] = None) -> TradeResult:
        """
        Execute a single trade attempt.

        Args:
            params: Trade request
            timeout: Deadline in seconds for the gateway order call

        Returns:
            TradeResult; success=False carries the reason in `error`
        """
        try:
            trade = self._validate_structure(params)
            account = await self._validate_account(trade)
            price = await self._check_buying_power(trade, account)
            await self._check_risk(trade, price)
        except TradeValidationError as exc:
            return self._reject(params, f"Trade validation failed: {exc}")
        except AccountValidationError as exc:
            return self._reject(params, f"Failed to validate account status: {exc}")
        except RiskViolationError as exc:
            return self._reject(params, f"Risk management violation: {exc}")

        return await self._dispatch(trade, price, timeout)

    def _reject(self, params: TradeParams, error: str) -> TradeResult:
        logger.warning(
            "Trade rejected for %s (portfolio=%s): %s",
            getattr(params, "symbol", "?"), getattr(params, "portfolio_id", "?"), error,
            extra={"symbol": getattr(params, "symbol", None), "portfolio_id": getattr(params, "portfolio_id", None)},
        )
        return TradeResult.failure(error, TradeState.REJECTED)

    def _validate_structure(self, params: TradeParams) -> _ValidatedTrade:
        reasons: List[str] = []

        symbol = params.symbol.strip() if isinstance(params.symbol, str) else ""
        if not symbol:
            reasons.append("Symbol is required")

        quantity = _as_number(params.quantity)
        if quantity is None or quantity <= 0:
            reasons.append("Quantity must be positive")

        try:
            action = TradeAction(params.action)
        except ValueError:
            action = None
            reasons.append("Action must be buy or sell")

        try:
            asset_type = AssetType(params.asset_type)
        except ValueError:
            asset_type = None
            reasons.append("Asset type must be stock or crypto")

        try:
            order_type = OrderType(params.order_type)
        except ValueError:
            order_type = None
            reasons.append("Order type must be market, limit, stop_loss or take_profit")

        price = None
        if params.price is not None:
            price = _as_number(params.price)
            if price is None or price <= 0:
                reasons.append("Price must be positive")
                price = None
        elif order_type == OrderType.LIMIT:
            reasons.append("Price is required for limit orders")

        if not params.user_id or not params.portfolio_id:
            reasons.append("User and portfolio are required")

        if reasons:
            raise TradeValidationError(reasons)

        return _ValidatedTrade(
            params=params,
            symbol=symbol,
            asset_type=asset_type,
            action=action,
            order_type=order_type,
            quantity=quantity,
            price=price,
        )

    async def _validate_account(self, trade: _ValidatedTrade) -> Optional[AccountSnapshot]:
        gateway = self.gateways[trade.asset_type]
        if trade.asset_type == AssetType.CRYPTO:
            if not gateway.is_configured():
                raise AccountValidationError("Crypto trading not configured")
            return None

        try:
            account = await gateway.get_account()
        except Exception as exc:
            logger.error("Account lookup failed on %s gateway: %s", gateway.name, exc)
            raise AccountValidationError(str(exc) or exc.__class__.__name__) from exc
        if not account.is_active:
            raise AccountValidationError("Account not active")
        return account

    async def _estimate_price(self, trade: _ValidatedTrade) -> Optional[float]:
        if trade.price is not None:
            return trade.price
        source = self.market_data.get(trade.asset_type)
        if source is None:
            return None
        try:
            quote = await source.get_latest_quote(trade.symbol)
        except GatewayError as exc:
            logger.warning("Failed to get market data for %s: %s", trade.symbol, exc)
            return None
        return quote.price if quote.price and quote.price > 0 else None

    async def _check_buying_power(
        self, trade: _ValidatedTrade, account: Optional[AccountSnapshot]
    ) -> Optional[float]:
        """Price the order and, for stock buys, check it against buying power."""
        price = await self._estimate_price(trade)
        if trade.action != TradeAction.BUY:
            return price
        if price is None:
            raise TradeValidationError("Unable to estimate price for market order")
        if account is not None and trade.quantity * price > account.buying_power:
            raise TradeValidationError("Insufficient buying power for this trade")
        return price

    async def _check_risk(self, trade: _ValidatedTrade, price: Optional[float]) -> None:
        params = trade.params
        try:
            metrics = await self.portfolio_store.get_metrics(params.user_id, params.portfolio_id)
        except Exception as exc:
            logger.error("Portfolio metrics unavailable for %s: %s", params.portfolio_id, exc)
            raise RiskViolationError("Failed to evaluate risk management constraints") from exc

        ok, reason = self.risk_manager.validate_order(
            trade.action, trade.quantity, price or 0.0, metrics
        )
        if not ok:
            raise RiskViolationError(reason)

    # ------------------------------------------------------------------
    # Dispatch and post-commit
    # ------------------------------------------------------------------

    def _build_order_spec(self, trade: _ValidatedTrade, price: Optional[float]) -> OrderSpec:
        side = OrderSide(trade.action.value)
        if trade.asset_type == AssetType.CRYPTO:
            # The exchange only takes limit orders; market orders use the estimated price.
            return OrderSpec(
                symbol=trade.symbol,
                side=side,
                quantity=trade.quantity,
                order_type=ExecutionOrderType.LIMIT,
                limit_price=price,
            )
        if trade.order_type == OrderType.MARKET:
            return OrderSpec(symbol=trade.symbol, side=side, quantity=trade.quantity)
        return OrderSpec(
            symbol=trade.symbol,
            side=side,
            quantity=trade.quantity,
            order_type=ExecutionOrderType.LIMIT,
            limit_price=price,
        )

    async def _dispatch(
        self, trade: _ValidatedTrade, price: Optional[float], timeout: Optional[float]
    ) -> TradeResult:
        gateway = self.gateways[trade.asset_type]
        label = "Stock" if trade.asset_type == AssetType.STOCK else "Crypto"
        deadline = timeout if timeout is not None else self.gateway_timeout
        spec = self._build_order_spec(trade, price)

        try:
            validation = await gateway.validate_order(spec)
            if not validation.valid:
                return self._reject(
                    trade.params, f"Order rejected by gateway: {', '.join(validation.errors)}"
                )
            fill = await asyncio.wait_for(gateway.place_order(spec), timeout=deadline)
        except asyncio.TimeoutError:
            logger.error("%s order for %s timed out after %ss", label, trade.symbol, deadline)
            return TradeResult.failure(f"Gateway timeout after {deadline:g}s", TradeState.GATEWAY_ERROR)
        except GatewayError as exc:
            logger.error("%s order for %s failed: %s", label, trade.symbol, exc)
            return TradeResult.failure(f"{label} trade execution failed: {exc}", TradeState.GATEWAY_ERROR)
        except Exception as exc:
            logger.exception("%s order for %s raised unexpectedly", label, trade.symbol)
            return TradeResult.failure(f"{label} trade execution failed: {exc}", TradeState.GATEWAY_ERROR)

        if fill.status.is_terminal_failure:
            logger.warning("%s order %s for %s ended %s", label, fill.order_id, trade.symbol, fill.status.value)
            return TradeResult.failure(f"Order {fill.status.value} by broker", TradeState.GATEWAY_ERROR)

        executed_quantity = fill.filled_quantity
        executed_price = fill.filled_avg_price or price or 0.0
        if executed_quantity > 0:
            logger.info(
                "%s %s %s %s @ %.4f filled (order %s)",
                label, trade.action.value, executed_quantity, trade.symbol, executed_price, fill.order_id,
                extra={"order_id": fill.order_id, "portfolio_id": trade.params.portfolio_id},
            )
        else:
            logger.info(
                "%s %s order %s for %s accepted as %s with nothing filled",
                label, trade.action.value, fill.order_id, trade.symbol, fill.status.value,
                extra={"order_id": fill.order_id, "portfolio_id": trade.params.portfolio_id},
            )
        warnings = await self._post_commit(trade, fill, executed_quantity, executed_price)

        return TradeResult(
            success=True,
            state=TradeState.FILLED if warnings else TradeState.RECONCILED,
            timestamp=fill.timestamp,
            order_id=fill.order_id,
            executed_price=executed_price,
            executed_quantity=executed_quantity,
            fees=fill.fees,
            warnings=tuple(warnings),
        )

    async def _post_commit(
        self,
        trade: _ValidatedTrade,
        fill: OrderFill,
        executed_quantity: float,
        executed_price: float,
    ) -> List[str]:
        """
        Append the trade log and trigger recomputation.

        Failures are logged and returned as warnings; the order has already
        executed at the broker, so the trade stays successful but unreconciled.
        """
        params = trade.params
        record = TradeRecord(
            portfolio_id=params.portfolio_id,
            user_id=params.user_id,
            symbol=trade.symbol,
            asset_type=trade.asset_type,
            action=trade.action,
            quantity=executed_quantity,
            price=executed_price,
            order_type=trade.order_type,
            fees=fill.fees,
            timestamp=fill.timestamp,
            external_order_id=fill.order_id,
            signal_id=params.signal_id,
            stop_loss=params.stop_loss,
            take_profit=params.take_profit,
            status=fill.status.value,
        )

        warnings: List[str] = []
        steps = (
            ("Trade log append", lambda: self.portfolio_store.append_trade(record)),
            ("Portfolio recompute", lambda: self.portfolio_store.recompute_performance(params.portfolio_id)),
        )
        for step, call in steps:
            try:
                await call()
            except Exception as exc:
                warning = PostCommitWarning(step, exc)
                logger.warning(
                    "Post-commit step failed for order %s (portfolio=%s): %s",
                    fill.order_id, params.portfolio_id, warning,
                )
                warnings.append(str(warning))
        return warnings

    # ------------------------------------------------------------------
    # Order management
    # ------------------------------------------------------------------

    async def cancel_order(self, order_id: str, asset_type: AssetType) -> OrderCancelResult:
        """
        Cancel an open order on the gateway for its asset class.

        Failures come back as an unsuccessful OrderCancelResult carrying the
        broker's status code when it reported one.
        """
        asset_type = AssetType(asset_type)
        gateway = self.gateways[asset_type]
        label = "Stock" if asset_type == AssetType.STOCK else "Crypto"

        if not order_id or not order_id.strip():
            return OrderCancelResult(False, order_id, asset_type, error="Order id is required", status_code=400)
        if not gateway.is_configured():
            return OrderCancelResult(
                False, order_id, asset_type, error=f"{label} trading not configured", status_code=400,
            )

        try:
            await asyncio.wait_for(gateway.cancel_order(order_id), timeout=self.gateway_timeout)
        except asyncio.TimeoutError:
            logger.error("%s order cancel %s timed out after %ss", label, order_id, self.gateway_timeout)
            return OrderCancelResult(
                False, order_id, asset_type, error=f"Gateway timeout after {self.gateway_timeout:g}s",
            )
        except GatewayError as exc:
            logger.error("%s order cancel %s failed: %s", label, order_id, exc)
            return OrderCancelResult(
                False, order_id, asset_type, error=f"{label} order cancel failed: {exc}",
                status_code=exc.status_code,
            )
        except Exception as exc:
            logger.exception("%s order cancel %s raised unexpectedly", label, order_id)
            return OrderCancelResult(False, order_id, asset_type, error=f"{label} order cancel failed: {exc}")

        logger.info("%s order %s cancelled", label, order_id, extra={"order_id": order_id})
        return OrderCancelResult(True, order_id, asset_type)

    # ------------------------------------------------------------------
    # Portfolio metrics and automated trading
    # ------------------------------------------------------------------

    async def get_portfolio_metrics(self, user_id: str, portfolio_id: str) -> PortfolioMetrics:
        """Current metrics for a portfolio, straight from the store."""
        return await self.portfolio_store.get_metrics(user_id, portfolio_id)

    def automated_quantity(self, signal: TradingSignal, portfolio_value: float) -> float:
        """Risk-per-trade share of portfolio value divided by the signal's target price."""
        reference = signal.target_price or signal.price
        if not reference or reference <= 0 or portfolio_value <= 0:
            return 0.0
        raw = portfolio_value * self.risk_params.risk_per_trade / 100 / reference
        if signal.asset_type == AssetType.CRYPTO:
            scale = 10 ** CRYPTO_QUANTITY_DECIMALS
            return math.floor(raw * scale) / scale
        return float(math.floor(raw))

    async def process_automated_trading(self, user_id: str, portfolio_id: str) -> AutomatedTradingSummary:
        """
        Execute recent high-confidence buy signals for one portfolio.

        Signals are processed sequentially; one failure does not stop the
        sweep. Concurrent sweeps for the same portfolio wait for each other.
        The portfolio's lock entry is dropped once no sweep holds or awaits it.
        """
        slot = self._sweep_locks.setdefault(portfolio_id, SweepLock())
        slot.users += 1
        try:
            async with slot.lock:
                return await self._run_sweep(user_id, portfolio_id)
        finally:
            slot.users -= 1
            if slot.users == 0 and self._sweep_locks.get(portfolio_id) is slot:
                del self._sweep_locks[portfolio_id]

    async def process_automated_trading_batch(
        self, targets: Sequence[Tuple[str, str]]
    ) -> List[AutomatedTradingSummary]:
        """Run sweeps for distinct (user_id, portfolio_id) pairs concurrently."""
        unique: Dict[str, Tuple[str, str]] = {}
        for user_id, portfolio_id in targets:
            unique.setdefault(portfolio_id, (user_id, portfolio_id))
        return list(await asyncio.gather(
            *(self.process_automated_trading(user_id, portfolio_id) for user_id, portfolio_id in unique.values())
        ))

    async def _run_sweep(self, user_id: str, portfolio_id: str) -> AutomatedTradingSummary:
        summary = AutomatedTradingSummary(portfolio_id=portfolio_id)
        try:
            signals = await self.portfolio_store.get_recent_high_confidence_signals(
                self.automation_window_hours, self.automation_min_confidence
            )
            metrics = await self.portfolio_store.get_metrics(user_id, portfolio_id)
        except Exception as exc:
            logger.exception("Automated trading could not start for portfolio %s", portfolio_id)
            summary.error = f"Automated trading processing failed: {exc}"
            return summary

        candidates = sorted(
            (
                signal for signal in signals
                if signal.action == SignalAction.BUY and signal.confidence >= self.automation_min_confidence
            ),
            key=lambda signal: signal.confidence,
            reverse=True,
        )

        for signal in candidates:
            summary.processed += 1
            quantity = self.automated_quantity(signal, metrics.total_value)
            if quantity <= 0:
                summary.failed += 1
                summary.results.append(AutomatedTradeOutcome(
                    signal_id=signal.id, symbol=signal.symbol, success=False,
                    error="Position size too small",
                ))
                continue

            result = await self.execute_trade(TradeParams(
                symbol=signal.symbol,
                asset_type=signal.asset_type,
                action=TradeAction.BUY,
                quantity=quantity,
                user_id=user_id,
                portfolio_id=portfolio_id,
                order_type=OrderType.LIMIT,
                price=signal.price,
                stop_loss=signal.stop_loss,
                take_profit=signal.take_profit,
                signal_id=signal.id,
            ))
            if result.success:
                summary.executed += 1
            else:
                summary.failed += 1
            summary.results.append(AutomatedTradeOutcome(
                signal_id=signal.id,
                symbol=signal.symbol,
                success=result.success,
                order_id=result.order_id,
                quantity=quantity,
                error=result.error,
            ))

        logger.info(
            "Automated trading for portfolio %s at %s: processed=%d executed=%d failed=%d",
            portfolio_id, utc_now().isoformat(), summary.processed, summary.executed, summary.failed,
        )
        return summary
