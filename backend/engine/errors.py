"""
Trading Error Taxonomy.

Exceptions raised inside the engine and its collaborators. The trading engine
converts them into failed TradeResults; they never cross its public contract.
"""

from typing import Optional


class TradingError(Exception):
    """Base exception for signal and trade processing errors."""
    pass


class TradeValidationError(TradingError):
    """Malformed trade or signal input (missing fields, non-positive quantity)."""

    def __init__(self, reasons):
        if isinstance(reasons, str):
            reasons = [reasons]
        self.reasons = list(reasons)
        super().__init__(", ".join(self.reasons))


class AccountValidationError(TradingError):
    """Account state could not be confirmed for trading."""
    pass


class InsufficientDataError(TradingError):
    """Not enough price history to compute indicators."""

    def __init__(self, message: str, available: int = 0, required: int = 0):
        super().__init__(message)
        self.available = available
        self.required = required


class RiskViolationError(TradingError):
    """A risk gate rejected the trade."""
    pass


class GatewayError(TradingError):
    """Execution or market-data collaborator failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        """True for 4xx responses, which are never retried."""
        return self.status_code is not None and 400 <= self.status_code < 500


class DataUnavailableError(GatewayError):
    """Market data could not be fetched (network, auth, rate limit)."""
    pass


class PostCommitWarning(TradingError):
    """Trade filled at the broker but the store could not be reconciled."""

    def __init__(self, step: str, cause: Exception):
        super().__init__(f"{step} failed: {cause}")
        self.step = step
        self.cause = cause
