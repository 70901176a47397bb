"""
Paper-trading collaborators.

In-memory stand-ins for the loan venue, the wallet ledger and the route
aggregator so the full execution sequence can run without touching chain.
"""

from collections import Counter, defaultdict
from typing import Any, Dict, Optional, Tuple

from flash_arbitrage.exceptions import (
    CalculationError,
    InsufficientProfit,
    InvalidTokenAccount,
    LoanUnavailable,
    SlippageExceeded,
)
from flash_arbitrage.fixed_point import (
    PRICE_PRECISION,
    U64_MAX,
    apply_bps,
    checked_add,
    checked_sub,
    mul_div,
)
from flash_arbitrage.utils import get_logger

from .types import Asset

logger = get_logger(__name__)


class PaperLedger:
    """
    Token balances per (owner, asset).

    Also serves as the profit transfer primitive used by the orchestrator.
    The execution account holds the proceeds of the swap sequence, which the
    orchestrator accounts for itself, so its balance is not tracked here.
    """

    def __init__(self, execution_account: str = "paper-wallet"):
        self.execution_account = execution_account
        self._balances: Dict[Tuple[str, str], int] = defaultdict(int)

    def balance(self, owner: str, asset: Asset) -> int:
        return self._balances[(owner, asset.symbol)]

    def credit(self, owner: str, asset: Asset, amount: int) -> None:
        if owner == self.execution_account:
            return
        key = (owner, asset.symbol)
        self._balances[key] = checked_add(self._balances[key], amount)

    def debit(self, owner: str, asset: Asset, amount: int) -> None:
        if owner == self.execution_account:
            return
        key = (owner, asset.symbol)
        held = self._balances[key]
        if held < amount:
            raise InsufficientProfit(
                f"{owner} holds {held} {asset}, needs {amount}",
                required=amount,
                available=held,
            )
        self._balances[key] = held - amount

    async def transfer(self, asset: Asset, source: str, destination: str, amount: int) -> None:
        if not destination:
            raise InvalidTokenAccount("Transfer destination is empty", asset=asset.symbol)
        self.debit(source, asset, amount)
        self.credit(destination, asset, amount)
        logger.debug(f"transfer {amount} {asset} {source} -> {destination}")


class PaperLoanVenue:
    """
    Flash-loan venue with a fixed liquidity per asset.

    Attributes:
        fee_bps: Fee the venue expects on repayment
        liquidity: Lendable amount per asset symbol (others fall back to default_liquidity)
        outstanding: Principal currently lent per asset symbol
        fees_collected: Repaid amount above principal per asset symbol

    Each repayment settles the largest open loan it covers. Settled
    (principal, fee) pairs are remembered so ``refund`` can reopen a loan
    exactly as it was.
    """

    def __init__(
        self,
        fee_bps: int,
        liquidity: Optional[Dict[str, int]] = None,
        default_liquidity: int = U64_MAX,
    ):
        self.fee_bps = fee_bps
        self.liquidity = dict(liquidity or {})
        self.default_liquidity = default_liquidity
        self.outstanding: Dict[str, int] = defaultdict(int)
        self.fees_collected: Dict[str, int] = defaultdict(int)
        self._open_loans: Dict[str, Counter] = defaultdict(Counter)
        self._settled: Dict[str, Counter] = defaultdict(Counter)

    def available(self, asset: Asset) -> int:
        total = self.liquidity.get(asset.symbol, self.default_liquidity)
        return max(total - self.outstanding[asset.symbol], 0)

    async def borrow(self, asset: Asset, amount: int) -> int:
        if amount <= 0 or amount > self.available(asset):
            raise LoanUnavailable(
                f"Cannot borrow {amount} {asset} (available {self.available(asset)})",
                asset=asset.symbol,
                requested=amount,
            )
        self.outstanding[asset.symbol] += amount
        self._open_loans[asset.symbol][amount] += 1
        return amount

    async def repay(self, asset: Asset, amount: int) -> None:
        loans = self._open_loans[asset.symbol]
        principal = max((p for p in loans if p <= amount), default=None)
        if principal is None:
            raise InsufficientProfit(
                f"Repayment {amount} {asset} covers no open loan",
                required=min(loans, default=0),
                available=amount,
            )
        fee = amount - principal
        _take(loans, principal)
        self.outstanding[asset.symbol] -= principal
        self.fees_collected[asset.symbol] += fee
        self._settled[asset.symbol][(principal, fee)] += 1

    async def refund(self, asset: Asset, amount: int) -> None:
        """Reverse an earlier repayment of exactly ``amount``, fee included."""
        settled = self._settled[asset.symbol]
        key = max(
            (k for k in settled if k[0] + k[1] == amount),
            key=lambda k: k[1],
            default=None,
        )
        if key is None:
            raise LoanUnavailable(
                f"No repayment of {amount} {asset} to refund",
                asset=asset.symbol,
                requested=amount,
            )
        principal, fee = key
        _take(settled, key)
        self.outstanding[asset.symbol] += principal
        self.fees_collected[asset.symbol] -= fee
        self._open_loans[asset.symbol][principal] += 1


def _take(counter: Counter, key) -> None:
    counter[key] -= 1
    if counter[key] <= 0:
        del counter[key]


class PaperRouteProvider:
    """
    Route provider that fills at fixed raw-unit rates.

    ``rates`` maps ``"IN_ADDRESS/OUT_ADDRESS"`` to output units per input
    unit; the venue fee is taken from the output.
    """

    def __init__(self, rates: Dict[str, float], fee_bps: int = 0):
        self.rates = dict(rates)
        self.fee_bps = fee_bps

    def set_rate(self, input_mint: str, output_mint: str, rate: float) -> None:
        self.rates[f"{input_mint}/{output_mint}"] = rate

    def _fill(self, input_mint: str, output_mint: str, amount: int) -> int:
        rate = self.rates.get(f"{input_mint}/{output_mint}")
        if rate is None:
            raise InvalidTokenAccount(
                f"No route {input_mint} -> {output_mint}", asset=input_mint
            )
        if amount <= 0:
            raise CalculationError(f"Cannot route amount {amount}")
        scaled_rate = int(round(rate * PRICE_PRECISION))
        gross = mul_div(amount, scaled_rate, PRICE_PRECISION)
        return checked_sub(gross, apply_bps(gross, self.fee_bps))

    async def get_quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> Tuple[int, Dict[str, Any]]:
        out_amount = self._fill(input_mint, output_mint, amount)
        return out_amount, {"outAmount": str(out_amount), "slippageBps": slippage_bps}

    async def execute_swap(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        min_output: int,
        slippage_bps: int,
    ) -> int:
        out_amount = self._fill(input_mint, output_mint, amount)
        if out_amount < min_output:
            raise SlippageExceeded(
                f"Routed output {out_amount} < min {min_output}",
                venue="paper-route",
                min_output=min_output,
                actual=out_amount,
            )
        return out_amount
