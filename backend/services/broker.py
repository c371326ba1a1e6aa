"""
Execution Gateway Interface.
Abstract interface for broker/exchange order execution, one per asset class.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from engine.errors import GatewayError
from engine.models import utc_now
from services.market_data import MarketDataSource, PaperMarketData

logger = logging.getLogger(__name__)


class OrderSide(str, Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"


class ExecutionOrderType(str, Enum):
    """Order types understood by execution gateways."""
    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(str, Enum):
    """Order status."""
    NEW = "new"
    PENDING = "pending"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REJECTED = "rejected"

    @property
    def is_terminal_failure(self) -> bool:
        return self in (OrderStatus.CANCELLED, OrderStatus.EXPIRED, OrderStatus.REJECTED)


@dataclass(frozen=True)
class OrderSpec:
    """Order as handed to an execution gateway."""

    symbol: str
    side: OrderSide
    quantity: float
    order_type: ExecutionOrderType = ExecutionOrderType.MARKET
    limit_price: Optional[float] = None
    time_in_force: str = "day"
    client_order_id: Optional[str] = None


@dataclass(frozen=True)
class OrderFill:
    """Gateway confirmation for a placed order."""

    order_id: str
    status: OrderStatus
    filled_quantity: float
    filled_avg_price: Optional[float]
    timestamp: datetime = field(default_factory=utc_now)
    fees: float = 0.0


@dataclass(frozen=True)
class OrderValidation:
    valid: bool
    errors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AccountSnapshot:
    """Brokerage account state used for pre-trade checks."""

    status: str
    buying_power: float
    cash: float
    equity: float
    trading_blocked: bool = False

    @property
    def is_active(self) -> bool:
        return self.status.upper() == "ACTIVE" and not self.trading_blocked


class ExecutionGateway(ABC):
    """
    Abstract execution gateway.

    Every broker adapter implements this interface so the trading engine can
    route orders by asset class. Implementations own their retry and backoff
    policy and raise GatewayError on failure.
    """

    name: str = "gateway"

    def is_configured(self) -> bool:
        """
        Check whether credentials are present for this gateway.

        Returns:
            True if orders can be placed
        """
        return True

    @abstractmethod
    async def get_account(self) -> AccountSnapshot:
        """
        Get account information.

        Returns:
            AccountSnapshot with status and buying power
        """
        pass

    async def validate_order(self, spec: OrderSpec) -> OrderValidation:
        """
        Validate an order before placement.

        Args:
            spec: Order to check

        Returns:
            OrderValidation with any errors found
        """
        errors: List[str] = []
        if not spec.symbol:
            errors.append("Symbol is required")
        if not math.isfinite(spec.quantity) or spec.quantity <= 0:
            errors.append("Quantity must be positive")
        if spec.order_type == ExecutionOrderType.LIMIT:
            if spec.limit_price is None or spec.limit_price <= 0:
                errors.append("Limit price must be positive")
        return OrderValidation(valid=not errors, errors=tuple(errors))

    @abstractmethod
    async def place_order(self, spec: OrderSpec) -> OrderFill:
        """
        Place an order.

        Args:
            spec: Validated order

        Returns:
            OrderFill confirmation

        Raises:
            GatewayError: Broker rejected the request or was unreachable
        """
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None:
        """
        Cancel an order.

        Args:
            order_id: Gateway order ID

        Raises:
            GatewayError: The gateway refused or failed the cancel
        """
        pass


class PaperGateway(ExecutionGateway):
    """
    Paper trading gateway.
    Fills every order immediately without real money.

    Market orders fill at the simulated quote; limit orders fill at their
    limit price.
    """

    name = "paper"

    def __init__(
        self,
        starting_balance: float = 100000.0,
        market_data: Optional[MarketDataSource] = None,
        fee_rate: float = 0.0,
        configured: bool = True,
    ):
        """
        Initialize paper gateway.

        Args:
            starting_balance: Starting cash balance
            market_data: Price source for market orders
            fee_rate: Fee as a fraction of notional
            configured: Value reported by is_configured()
        """
        self.balance = starting_balance
        self.market_data = market_data or PaperMarketData()
        self.fee_rate = fee_rate
        self.configured = configured
        self.orders: Dict[str, OrderFill] = {}
        self.order_counter = 0

    def is_configured(self) -> bool:
        return self.configured

    async def get_account(self) -> AccountSnapshot:
        return AccountSnapshot(
            status="ACTIVE",
            buying_power=max(0.0, self.balance),
            cash=self.balance,
            equity=self.balance,
        )

    async def place_order(self, spec: OrderSpec) -> OrderFill:
        self.order_counter += 1
        order_id = f"paper-{self.order_counter}"

        if spec.order_type == ExecutionOrderType.LIMIT and spec.limit_price:
            fill_price = float(spec.limit_price)
        else:
            quote = await self.market_data.get_latest_quote(spec.symbol)
            fill_price = quote.price

        notional = spec.quantity * fill_price
        fees = round(notional * self.fee_rate, 8)
        if spec.side == OrderSide.BUY:
            self.balance -= notional + fees
        else:
            self.balance += notional - fees

        fill = OrderFill(
            order_id=order_id,
            status=OrderStatus.FILLED,
            filled_quantity=spec.quantity,
            filled_avg_price=fill_price,
            fees=fees,
        )
        self.orders[order_id] = fill
        logger.info(
            "Paper %s %s %s @ %.4f (order %s)",
            spec.side.value, spec.quantity, spec.symbol, fill_price, order_id,
        )
        return fill

    async def cancel_order(self, order_id: str) -> None:
        fill = self.orders.get(order_id)
        if fill is None:
            raise GatewayError(f"Order {order_id} not found", status_code=404)
        if fill.status == OrderStatus.FILLED:
            raise GatewayError(f"Order {order_id} is already filled", status_code=422)
        self.orders[order_id] = OrderFill(
            order_id=order_id,
            status=OrderStatus.CANCELLED,
            filled_quantity=fill.filled_quantity,
            filled_avg_price=fill.filled_avg_price,
        )
