"""
Core data types for flash-loan cross-venue arbitrage.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from flash_arbitrage.exceptions import FailureKind
from flash_arbitrage.fixed_point import U64_MAX, compute_price


@dataclass(frozen=True)
class Asset:
    """
    A token the engine can borrow, swap or transfer.

    Attributes:
        symbol: Ticker used in config and logs (e.g. "SOL")
        address: Mint / contract address
        decimals: Number of decimals of the smallest denomination
    """

    symbol: str
    address: str
    decimals: int

    def __str__(self) -> str:
        return self.symbol


@dataclass(frozen=True)
class TokenPair:
    """
    One arbitrage instrument on the watch-list.

    Attributes:
        input_asset: Asset that enters the first swap and is recovered by the second
        output_asset: Intermediate asset between the two swaps
        trade_amount: Notional used to quote and evaluate (raw units of input_asset)
        loan_amount: Settlement-asset amount borrowed and traded (raw units)
    """

    input_asset: Asset
    output_asset: Asset
    trade_amount: int
    loan_amount: int

    def __post_init__(self):
        if self.input_asset == self.output_asset:
            raise ValueError(f"Pair needs two distinct assets: {self.input_asset}")
        for name in ("trade_amount", "loan_amount"):
            value = getattr(self, name)
            if not isinstance(value, int) or not 0 < value <= U64_MAX:
                raise ValueError(f"{name} must be a positive 64-bit integer: {value!r}")

    @property
    def pair_id(self) -> str:
        return f"{self.input_asset.symbol}/{self.output_asset.symbol}"


@dataclass(frozen=True)
class PriceQuote:
    """
    A venue's answer for trading ``input_amount`` of one asset into another.

    ``price`` is output per input scaled by PRICE_PRECISION.
    """

    venue_id: str
    input_asset: Asset
    output_asset: Asset
    input_amount: int
    output_amount: int
    fee_bps: int

    @property
    def price(self) -> int:
        return compute_price(self.output_amount, self.input_amount)


class Direction(Enum):
    """Which venue takes the first swap; the other venue takes the second."""

    SELL_ON_A_THEN_B = "a_then_b"
    SELL_ON_B_THEN_A = "b_then_a"

    @property
    def first_venue(self) -> str:
        return "a" if self is Direction.SELL_ON_A_THEN_B else "b"

    @property
    def second_venue(self) -> str:
        return "b" if self is Direction.SELL_ON_A_THEN_B else "a"


@dataclass(frozen=True)
class ArbitrageOpportunity:
    """
    A positive go decision for one pair in one evaluation cycle.

    Attributes:
        pair: Pair evaluated
        direction: Swap order; the second swap hits the higher-priced venue
        quote_a: Quote from venue A
        quote_b: Quote from venue B
        spread: |price_a - price_b| * amount / PRICE_PRECISION (raw output units)
        total_cost: Aggregate fee + gas cost for the evaluated amount
    """

    pair: Optional[TokenPair]
    direction: Direction
    quote_a: PriceQuote
    quote_b: PriceQuote
    spread: int
    total_cost: int

    @property
    def expected_profit(self) -> int:
        return self.spread - self.total_cost


class ExecutionState(Enum):
    """Progress of one atomic execution."""

    IDLE = "idle"
    BORROWED = "borrowed"
    FIRST_SWAPPED = "first_swapped"
    SECOND_SWAPPED = "second_swapped"
    REPAID = "repaid"
    PROFIT_TRANSFERRED = "profit_transferred"
    REVERTED = "reverted"


@dataclass
class ExecutionOutcome:
    """
    Result of one triggered execution.

    Attributes:
        success: True when the sequence committed
        realized_profit: Residual after repayment (raw settlement units)
        failure_kind: Why the execution reverted, if it did
        state: Terminal state reached
        repaid_amount: loan_amount + loan_fee on success
        error: Error message (if failed)
        tx_hash: Transaction hash when executed on-chain
        compensation_errors: Problems met while unwinding completed steps
        history: States passed through, in order
    """

    success: bool
    realized_profit: int = 0
    failure_kind: Optional[FailureKind] = None
    state: ExecutionState = ExecutionState.IDLE
    repaid_amount: int = 0
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    compensation_errors: List[str] = field(default_factory=list)
    history: List[ExecutionState] = field(default_factory=list)

    @property
    def retryable(self) -> bool:
        return self.failure_kind is not None and self.failure_kind.retryable

    @classmethod
    def reverted(
        cls,
        kind: FailureKind,
        error: str,
        compensation_errors: Optional[List[str]] = None,
        history: Optional[List[ExecutionState]] = None,
    ) -> "ExecutionOutcome":
        return cls(
            success=False,
            failure_kind=kind,
            state=ExecutionState.REVERTED,
            error=error,
            compensation_errors=list(compensation_errors or []),
            history=list(history or []) + [ExecutionState.REVERTED],
        )
