"""
Fee and gas cost model.

Aggregates the flash-loan fee, both swap fees, the optional conversion fee,
a slippage reserve, the configured profit margin and a fixed execution-cost
estimate into one figure that is directly comparable with an evaluated
spread.

Fee estimates fail soft: a term whose arithmetic overflows contributes zero
instead of aborting the evaluation. Amounts that actually move on the
execution path (the loan repayment) use the strict variants, which raise.
"""

from dataclasses import dataclass, replace

from flash_arbitrage.exceptions import CalculationError
from flash_arbitrage.fixed_point import U64_MAX, apply_bps, checked_add


def _soft_bps(amount: int, bps: int) -> int:
    try:
        return apply_bps(amount, bps)
    except CalculationError:
        return 0


@dataclass(frozen=True)
class CostBreakdown:
    """Every term of ``FeeModel.total_cost`` for one amount."""

    loan_fee: int
    swap_fee_total: int
    conversion_fee: int
    slippage_reserve: int
    margin: int
    gas_estimate: int
    total: int

    def format_log(self) -> str:
        return (
            f"cost {self.total} = loan {self.loan_fee} + swaps {self.swap_fee_total} "
            f"+ conversion {self.conversion_fee} + slippage {self.slippage_reserve} "
            f"+ margin {self.margin} + gas {self.gas_estimate}"
        )


@dataclass(frozen=True)
class FeeModel:
    """
    Fee rates (basis points) and the fixed gas estimate.

    Attributes:
        loan_fee_bps: Flash-loan fee charged on the borrowed amount
        venue_a_fee_bps: Swap fee of venue A
        venue_b_fee_bps: Swap fee of venue B
        conversion_fee_bps: Round-trip fee of the settlement-asset conversion hops
        gas_estimate: Execution cost, already in the units of the spread
        min_profit_bps: Extra margin required on top of all costs
        slippage_bps: Reserve for price movement between quote and fill
    """

    loan_fee_bps: int = 20
    venue_a_fee_bps: int = 30
    venue_b_fee_bps: int = 25
    conversion_fee_bps: int = 60
    gas_estimate: int = 10_000_000
    min_profit_bps: int = 0
    slippage_bps: int = 0

    def loan_fee(self, amount: int) -> int:
        return _soft_bps(amount, self.loan_fee_bps)

    def loan_fee_strict(self, amount: int) -> int:
        """Loan fee for an actual repayment; raises CalculationError."""
        return apply_bps(amount, self.loan_fee_bps)

    def swap_fee_total(self, amount: int) -> int:
        return _soft_bps(amount, self.venue_a_fee_bps + self.venue_b_fee_bps)

    def conversion_fee(self, amount: int) -> int:
        return _soft_bps(amount, self.conversion_fee_bps)

    def slippage_reserve(self, amount: int) -> int:
        return _soft_bps(amount, self.slippage_bps)

    def margin(self, amount: int) -> int:
        return _soft_bps(amount, self.min_profit_bps)

    def breakdown(self, amount: int, needs_conversion: bool = False) -> CostBreakdown:
        loan_fee = self.loan_fee(amount)
        swap_fees = self.swap_fee_total(amount)
        conversion = self.conversion_fee(amount) if needs_conversion else 0
        slippage = self.slippage_reserve(amount)
        margin = self.margin(amount)

        total = 0
        for term in (loan_fee, swap_fees, conversion, slippage, margin, self.gas_estimate):
            try:
                total = checked_add(total, term)
            except CalculationError:
                # An unrepresentable cost can never be beaten
                total = U64_MAX
                break

        return CostBreakdown(
            loan_fee=loan_fee,
            swap_fee_total=swap_fees,
            conversion_fee=conversion,
            slippage_reserve=slippage,
            margin=margin,
            gas_estimate=self.gas_estimate,
            total=total,
        )

    def total_cost(self, amount: int, needs_conversion: bool = False) -> int:
        return self.breakdown(amount, needs_conversion).total

    def with_gas(self, gas_estimate: int) -> "FeeModel":
        """Copy of this model with a re-priced gas estimate."""
        return replace(self, gas_estimate=gas_estimate)
