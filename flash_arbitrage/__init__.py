"""
Flash-loan cross-venue arbitrage engine.

Shared foundation for the arbitrage engine in ``dex``: fixed-point price
math, the error taxonomy, configuration, logging and metrics.
"""

from flash_arbitrage.version import __version__

PROJECT_NAME = "flash-arbitrage"
VERSION = __version__

from flash_arbitrage.exceptions import (
    CalculationError,
    ConfigurationError,
    FailureKind,
    FlashArbitrageError,
    InsufficientProfit,
    InvalidTokenAccount,
    LoanUnavailable,
    NetworkError,
    SimulationError,
    SlippageExceeded,
    UnprofitableError,
)
from flash_arbitrage.fixed_point import PRICE_PRECISION, compute_price

__all__ = [
    "PROJECT_NAME",
    "VERSION",
    "PRICE_PRECISION",
    "compute_price",
    "FailureKind",
    "FlashArbitrageError",
    "CalculationError",
    "ConfigurationError",
    "InsufficientProfit",
    "InvalidTokenAccount",
    "LoanUnavailable",
    "NetworkError",
    "SimulationError",
    "SlippageExceeded",
    "UnprofitableError",
]
