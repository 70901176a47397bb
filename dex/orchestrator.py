"""
Atomic execution orchestrator.

Runs one arbitrage as an all-or-nothing sequence:

    borrow -> [convert in] -> first swap -> second swap -> [convert out]
           -> repay loan + fee -> transfer profit

Every completed step registers a compensating action. If any later step
fails, the compensations run in reverse order and the outcome reports the
execution as reverted with a classified failure kind. Profitability is
re-verified against live quotes before anything is borrowed.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple, runtime_checkable

from flash_arbitrage.exceptions import (
    ConfigurationError,
    InsufficientProfit,
    LoanUnavailable,
    SlippageExceeded,
    UnprofitableError,
    failure_kind_of,
)
from flash_arbitrage.fixed_point import checked_add, checked_sub, min_output_for_slippage
from flash_arbitrage.utils import format_duration, get_logger

from .evaluator import evaluate
from .fees import FeeModel
from .types import (
    ArbitrageOpportunity,
    Asset,
    ExecutionOutcome,
    ExecutionState,
    TokenPair,
)
from .venues import Venue, VenueKind

logger = get_logger(__name__)


@runtime_checkable
class LoanVenue(Protocol):
    """Source of uncollateralized same-transaction loans."""

    async def borrow(self, asset: Asset, amount: int) -> int:
        ...

    async def repay(self, asset: Asset, amount: int) -> None:
        ...

    async def refund(self, asset: Asset, amount: int) -> None:
        """Reverse a repayment of ``amount``: the loan is open again, the fee unbooked."""
        ...


@runtime_checkable
class Transferer(Protocol):
    """Moves tokens between accounts."""

    async def transfer(self, asset: Asset, source: str, destination: str, amount: int) -> None:
        ...


Compensation = Callable[[], Awaitable[object]]


@dataclass
class ExecutionRun:
    """Mutable bookkeeping for one execution; never shared between runs."""

    pair: TokenPair
    state: ExecutionState = ExecutionState.IDLE
    history: List[ExecutionState] = field(default_factory=lambda: [ExecutionState.IDLE])
    compensations: List[Tuple[str, Compensation]] = field(default_factory=list)

    def advance(self, state: ExecutionState) -> None:
        self.state = state
        self.history.append(state)

    def on_failure(self, description: str, action: Compensation) -> None:
        self.compensations.append((description, action))


class ArbitrageOrchestrator:
    """
    Executes opportunities for the configured pair of venues.

    The orchestrator holds no per-execution state, so executions for
    different pairs may run concurrently on the same instance. Callers must
    not run two executions for the same pair at once.
    """

    def __init__(
        self,
        venue_a: Venue,
        venue_b: Venue,
        loan_venue: LoanVenue,
        transferer: Transferer,
        fee_model: FeeModel,
        settlement_asset: Asset,
        wallet: str,
        profit_destination: str,
        conversion_venue: Optional[Venue] = None,
        step_timeout: float = 10.0,
    ):
        self.venue_a = venue_a
        self.venue_b = venue_b
        self.loan_venue = loan_venue
        self.transferer = transferer
        self.fee_model = fee_model
        self.settlement_asset = settlement_asset
        self.wallet = wallet
        self.profit_destination = profit_destination
        self.conversion_venue = conversion_venue
        self.step_timeout = step_timeout

    def needs_conversion(self, pair: TokenPair) -> bool:
        return pair.input_asset != self.settlement_asset

    async def _bounded(self, awaitable: Awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.step_timeout)

    async def verify(
        self, pair: TokenPair, fee_model: Optional[FeeModel] = None
    ) -> ArbitrageOpportunity:
        """
        Re-quote both venues and re-run the profitability check.

        Raises:
            UnprofitableError: If the opportunity is gone
        """
        model = fee_model or self.fee_model
        quote_a, quote_b = await self._bounded(
            asyncio.gather(
                self.venue_a.quote(pair.input_asset, pair.output_asset, pair.trade_amount),
                self.venue_b.quote(pair.input_asset, pair.output_asset, pair.trade_amount),
            )
        )
        opportunity = evaluate(
            quote_a,
            quote_b,
            pair.trade_amount,
            model,
            needs_conversion=self.needs_conversion(pair),
            pair=pair,
        )
        if opportunity is None:
            raise UnprofitableError(
                f"{pair.pair_id}: spread no longer covers costs",
                details={"price_a": quote_a.price, "price_b": quote_b.price},
            )
        return opportunity

    async def _hop(
        self,
        run: ExecutionRun,
        venue: Venue,
        asset_in: Asset,
        asset_out: Asset,
        amount: int,
    ) -> int:
        quote = await self._bounded(
            venue.quote(asset_in, asset_out, amount, venue.max_slippage_bps)
        )
        min_output = min_output_for_slippage(quote.output_amount, venue.max_slippage_bps)
        realized = await self._bounded(venue.swap(asset_in, asset_out, amount, min_output))

        # The swap has executed even when it filled short
        if venue.kind is VenueKind.CONSTANT_PRODUCT:
            run.on_failure(
                f"unwind {amount} {asset_in} -> {realized} {asset_out} on {venue.venue_id}",
                lambda: venue.unwind(asset_in, asset_out, amount, realized),
            )
        else:
            run.on_failure(
                f"swap back {realized} {asset_out} -> {asset_in} on {venue.venue_id}",
                lambda: venue.swap(asset_out, asset_in, realized, 0),
            )

        if realized < min_output:
            raise SlippageExceeded(
                f"{venue.venue_id}: realized {realized} < min {min_output}",
                venue=venue.venue_id,
                min_output=min_output,
                actual=realized,
            )
        logger.debug(
            f"{run.pair.pair_id}: {venue.venue_id} {amount} {asset_in} -> {realized} {asset_out}"
        )
        return realized

    async def _run(
        self, run: ExecutionRun, opportunity: ArbitrageOpportunity
    ) -> ExecutionOutcome:
        pair = run.pair
        settle = self.settlement_asset
        first_venue, second_venue = (
            (self.venue_a, self.venue_b)
            if opportunity.direction.first_venue == "a"
            else (self.venue_b, self.venue_a)
        )

        conversion = None
        if self.needs_conversion(pair):
            conversion = self.conversion_venue
            if conversion is None:
                raise ConfigurationError(
                    f"{pair.pair_id} needs a conversion venue for {settle}"
                )

        borrowed = await self._bounded(self.loan_venue.borrow(settle, pair.loan_amount))
        if borrowed != pair.loan_amount:
            raise LoanUnavailable(
                f"Lender provided {borrowed} of {pair.loan_amount} {settle}",
                asset=settle.symbol,
                requested=pair.loan_amount,
            )
        run.on_failure(
            f"repay principal {borrowed} {settle}",
            lambda: self.loan_venue.repay(settle, borrowed),
        )
        run.advance(ExecutionState.BORROWED)

        amount = borrowed
        if conversion is not None:
            amount = await self._hop(run, conversion, settle, pair.input_asset, amount)

        intermediate = await self._hop(
            run, first_venue, pair.input_asset, pair.output_asset, amount
        )
        run.advance(ExecutionState.FIRST_SWAPPED)

        recovered = await self._hop(
            run, second_venue, pair.output_asset, pair.input_asset, intermediate
        )
        run.advance(ExecutionState.SECOND_SWAPPED)

        if conversion is not None:
            recovered = await self._hop(run, conversion, pair.input_asset, settle, recovered)

        repay_amount = checked_add(
            pair.loan_amount, self.fee_model.loan_fee_strict(pair.loan_amount)
        )
        if recovered < repay_amount:
            raise InsufficientProfit(
                f"{pair.pair_id}: recovered {recovered} < repayment {repay_amount}",
                required=repay_amount,
                available=recovered,
            )
        await self._bounded(self.loan_venue.repay(settle, repay_amount))
        run.on_failure(
            f"refund repayment {repay_amount} {settle}",
            lambda: self.loan_venue.refund(settle, repay_amount),
        )
        run.advance(ExecutionState.REPAID)

        profit = checked_sub(recovered, repay_amount)
        if profit > 0:
            await self._bounded(
                self.transferer.transfer(settle, self.wallet, self.profit_destination, profit)
            )
            run.on_failure(
                f"return profit {profit} {settle}",
                lambda: self.transferer.transfer(
                    settle, self.profit_destination, self.wallet, profit
                ),
            )
            run.advance(ExecutionState.PROFIT_TRANSFERRED)

        return ExecutionOutcome(
            success=True,
            realized_profit=profit,
            state=run.state,
            repaid_amount=repay_amount,
            history=list(run.history),
        )

    async def _compensate(self, run: ExecutionRun) -> List[str]:
        errors = []
        for description, action in reversed(run.compensations):
            try:
                await self._bounded(action())
            except Exception as e:
                logger.error(f"{run.pair.pair_id}: compensation '{description}' failed: {e}")
                errors.append(f"{description}: {e}")
        run.compensations.clear()
        return errors

    async def execute(
        self, pair: TokenPair, fee_model: Optional[FeeModel] = None
    ) -> ExecutionOutcome:
        """
        Verify and execute one pair.

        Args:
            pair: Pair to execute
            fee_model: Fee model for re-verification (defaults to the
                orchestrator's own, the monitor passes its gas-repriced copy)

        Returns:
            ExecutionOutcome; failures are reported, never raised
        """
        run = ExecutionRun(pair=pair)
        start = time.monotonic()

        try:
            opportunity = await self.verify(pair, fee_model)
            logger.info(
                f"{pair.pair_id}: executing {opportunity.direction.value} "
                f"(spread {opportunity.spread}, cost {opportunity.total_cost}, "
                f"expected {opportunity.expected_profit})"
            )
            outcome = await self._run(run, opportunity)
        except Exception as e:
            kind = failure_kind_of(e)
            logger.warning(
                f"{pair.pair_id}: execution reverted at {run.state.value} "
                f"({kind.value}): {e}"
            )
            compensation_errors = await self._compensate(run)
            return ExecutionOutcome.reverted(
                kind, str(e), compensation_errors=compensation_errors, history=run.history
            )

        logger.info(
            f"{pair.pair_id}: committed, profit {outcome.realized_profit}, "
            f"repaid {outcome.repaid_amount} in {format_duration(time.monotonic() - start)}"
        )
        return outcome
