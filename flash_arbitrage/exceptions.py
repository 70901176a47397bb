"""
Exception hierarchy for the flash arbitrage engine.

Every execution-path error carries the ``FailureKind`` it maps to, so the
orchestrator can turn any failure into a reverted outcome and the monitor can
tell transient infrastructure problems apart from aborted executions.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(Enum):
    """Why an evaluation or execution did not complete."""

    CALCULATION_ERROR = "calculation_error"
    INSUFFICIENT_PROFIT = "insufficient_profit"
    INVALID_TOKEN_ACCOUNT = "invalid_token_account"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    LOAN_UNAVAILABLE = "loan_unavailable"
    UNPROFITABLE = "unprofitable"
    NETWORK = "network"

    @property
    def retryable(self) -> bool:
        """Transient failures are retried on the next polling cycle."""
        return self is FailureKind.NETWORK


class FlashArbitrageError(Exception):
    """Base exception for all flash arbitrage related errors."""

    failure_kind: Optional[FailureKind] = None

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(FlashArbitrageError):
    """Raised when there are configuration-related issues."""

    pass


class CalculationError(FlashArbitrageError):
    """Arithmetic overflow, underflow or division by zero in price/trade math."""

    failure_kind = FailureKind.CALCULATION_ERROR


class InsufficientProfit(FlashArbitrageError):
    """Swap proceeds do not cover the loan repayment."""

    failure_kind = FailureKind.INSUFFICIENT_PROFIT

    def __init__(
        self,
        message: str,
        required: Optional[int] = None,
        available: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.required = required
        self.available = available


class InvalidTokenAccount(FlashArbitrageError):
    """A loan or swap counterparty account is malformed or unknown."""

    failure_kind = FailureKind.INVALID_TOKEN_ACCOUNT

    def __init__(
        self,
        message: str,
        asset: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.asset = asset


class SlippageExceeded(FlashArbitrageError):
    """A hop's realized output fell under its minimum output bound."""

    failure_kind = FailureKind.SLIPPAGE_EXCEEDED

    def __init__(
        self,
        message: str,
        venue: Optional[str] = None,
        min_output: Optional[int] = None,
        actual: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.venue = venue
        self.min_output = min_output
        self.actual = actual


class LoanUnavailable(FlashArbitrageError):
    """The loan venue refused to lend the requested amount."""

    failure_kind = FailureKind.LOAN_UNAVAILABLE

    def __init__(
        self,
        message: str,
        asset: Optional[str] = None,
        requested: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.asset = asset
        self.requested = requested


class UnprofitableError(FlashArbitrageError):
    """Re-evaluation at execution time no longer clears the cost threshold."""

    failure_kind = FailureKind.UNPROFITABLE


class NetworkError(FlashArbitrageError):
    """Raised when network or connectivity issues occur (retry next tick)."""

    failure_kind = FailureKind.NETWORK

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code


class SimulationError(NetworkError):
    """The read-only price-check simulation returned no usable data."""

    pass


def failure_kind_of(error: BaseException) -> FailureKind:
    """Map any exception raised on the execution path to a failure kind."""
    kind = getattr(error, "failure_kind", None)
    if isinstance(kind, FailureKind):
        return kind
    if isinstance(error, ArithmeticError):
        return FailureKind.CALCULATION_ERROR
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return FailureKind.NETWORK
    # Anything else came from a counterparty we could not talk to properly
    return FailureKind.INVALID_TOKEN_ACCOUNT
