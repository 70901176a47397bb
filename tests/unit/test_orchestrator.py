"""
Unit tests for the atomic execution orchestrator.

Venues and the lender are small fakes that record every call into a shared
log so the tests can assert both what happened and in which order.
"""

import asyncio
from fractions import Fraction

import pytest

from dex.fees import FeeModel
from dex.orchestrator import ArbitrageOrchestrator, LoanVenue, Transferer
from dex.paper import PaperLedger, PaperLoanVenue
from dex.types import Asset, ExecutionState, PriceQuote, TokenPair
from dex.venues import ConstantProductVenue, Pool, VenueKind
from flash_arbitrage.exceptions import FailureKind, LoanUnavailable, NetworkError

USDC = Asset("USDC", "0x" + "01" * 20, 6)
SOL = Asset("SOL", "0x" + "02" * 20, 9)
BONK = Asset("BONK", "0x" + "03" * 20, 5)


class FakeVenue:
    kind = VenueKind.ROUTED
    fee_bps = 0

    def __init__(self, venue_id, rates, log, max_slippage_bps=50, haircut_bps=0, hang=False):
        self.venue_id = venue_id
        self.rates = {k: Fraction(v) for k, v in rates.items()}
        self.log = log
        self.max_slippage_bps = max_slippage_bps
        self.haircut_bps = haircut_bps
        self.hang = hang

    def _out(self, i, o, amount):
        return int(amount * self.rates[(i.symbol, o.symbol)])

    async def quote(self, i, o, amount, max_slippage_bps=None):
        return PriceQuote(self.venue_id, i, o, amount, self._out(i, o, amount), self.fee_bps)

    async def swap(self, i, o, amount, min_output):
        self.log.append(("swap", self.venue_id, i.symbol, o.symbol, amount, min_output))
        if self.hang:
            await asyncio.sleep(10)
        out = self._out(i, o, amount)
        return out - out * self.haircut_bps // 10_000


class FakeLender:
    def __init__(self, log, fail_borrow=None, fail_refund=None):
        self.log = log
        self.fail_borrow = fail_borrow
        self.fail_refund = fail_refund
        self.borrows = 0

    async def borrow(self, asset, amount):
        self.borrows += 1
        self.log.append(("borrow", asset.symbol, amount))
        if self.fail_borrow is not None and self.borrows in self.fail_borrow:
            raise self.fail_borrow[self.borrows]
        return amount

    async def repay(self, asset, amount):
        self.log.append(("repay", asset.symbol, amount))

    async def refund(self, asset, amount):
        self.log.append(("refund", asset.symbol, amount))
        if self.fail_refund is not None:
            raise self.fail_refund


class FakeTransferer:
    def __init__(self, log, fail=None):
        self.log = log
        self.fail = fail

    async def transfer(self, asset, source, destination, amount):
        self.log.append(("transfer", asset.symbol, source, destination, amount))
        if self.fail is not None:
            raise self.fail


FEES = FeeModel(
    loan_fee_bps=20,
    venue_a_fee_bps=0,
    venue_b_fee_bps=0,
    conversion_fee_bps=60,
    gas_estimate=1_000,
)

PAIR = TokenPair(USDC, SOL, trade_amount=1_000_000, loan_amount=1_000_000)


@pytest.fixture
def log():
    return []


def make_orchestrator(log, b_back_rate="0.52", a_rate="2", b_rate="2.1", **kwargs):
    venue_a = kwargs.pop(
        "venue_a",
        FakeVenue("A", {("USDC", "SOL"): a_rate, ("SOL", "USDC"): "0.5"}, log),
    )
    venue_b = kwargs.pop(
        "venue_b",
        FakeVenue("B", {("USDC", "SOL"): b_rate, ("SOL", "USDC"): b_back_rate}, log),
    )
    lender = kwargs.pop("lender", FakeLender(log))
    transferer = kwargs.pop("transferer", FakeTransferer(log))
    orchestrator = ArbitrageOrchestrator(
        venue_a=venue_a,
        venue_b=venue_b,
        loan_venue=lender,
        transferer=transferer,
        fee_model=FEES,
        settlement_asset=USDC,
        wallet="wallet",
        profit_destination="treasury",
        **kwargs,
    )
    return orchestrator, lender, transferer


class TestSuccessPath:
    """Test committed executions."""

    @pytest.mark.asyncio
    async def test_commits_and_transfers_profit(self, log):
        """Test borrow, both hops, repay and transfer run in order with exact amounts."""
        orchestrator, lender, transferer = make_orchestrator(log)
        assert isinstance(lender, LoanVenue)
        assert isinstance(transferer, Transferer)

        outcome = await orchestrator.execute(PAIR)

        assert outcome.success
        assert outcome.failure_kind is None
        assert outcome.repaid_amount == 1_000_000 + 2_000
        assert outcome.realized_profit == 1_040_000 - 1_002_000
        assert outcome.state is ExecutionState.PROFIT_TRANSFERRED
        assert outcome.history == [
            ExecutionState.IDLE,
            ExecutionState.BORROWED,
            ExecutionState.FIRST_SWAPPED,
            ExecutionState.SECOND_SWAPPED,
            ExecutionState.REPAID,
            ExecutionState.PROFIT_TRANSFERRED,
        ]
        assert log == [
            ("borrow", "USDC", 1_000_000),
            ("swap", "A", "USDC", "SOL", 1_000_000, 1_990_000),
            ("swap", "B", "SOL", "USDC", 2_000_000, 1_034_800),
            ("repay", "USDC", 1_002_000),
            ("transfer", "USDC", "wallet", "treasury", 38_000),
        ]

    @pytest.mark.asyncio
    async def test_second_swap_on_higher_priced_venue(self, log):
        """Test venue A quoting more output per input sends the first hop to B."""
        orchestrator, _, _ = make_orchestrator(
            log,
            venue_a=FakeVenue("A", {("USDC", "SOL"): "2.1", ("SOL", "USDC"): "0.52"}, log),
            venue_b=FakeVenue("B", {("USDC", "SOL"): "2", ("SOL", "USDC"): "0.5"}, log),
        )
        outcome = await orchestrator.execute(PAIR)

        swaps = [entry[1] for entry in log if entry[0] == "swap"]
        assert swaps == ["B", "A"]
        assert outcome.success

    @pytest.mark.asyncio
    async def test_zero_profit_skips_transfer(self, log):
        """Test a residual of exactly zero commits without a transfer."""
        orchestrator, _, _ = make_orchestrator(log, b_back_rate="0.501")
        outcome = await orchestrator.execute(PAIR)

        assert outcome.success
        assert outcome.realized_profit == 0
        assert outcome.repaid_amount == 1_002_000
        assert outcome.state is ExecutionState.REPAID
        assert not [entry for entry in log if entry[0] == "transfer"]

    @pytest.mark.asyncio
    async def test_conversion_hops(self, log):
        """Test a non-settlement input asset is converted in and back out."""
        pair = TokenPair(SOL, BONK, trade_amount=1_000_000, loan_amount=1_000_000)
        conversion = FakeVenue("conv", {("USDC", "SOL"): "0.5", ("SOL", "USDC"): "2"}, log)
        orchestrator, _, _ = make_orchestrator(
            log,
            venue_a=FakeVenue("A", {("SOL", "BONK"): "2", ("BONK", "SOL"): "0.5"}, log),
            venue_b=FakeVenue("B", {("SOL", "BONK"): "2.1", ("BONK", "SOL"): "0.52"}, log),
            conversion_venue=conversion,
        )
        outcome = await orchestrator.execute(pair)

        assert outcome.success
        assert outcome.realized_profit == 38_000
        swaps = [(e[1], e[2], e[3]) for e in log if e[0] == "swap"]
        assert swaps == [
            ("conv", "USDC", "SOL"),
            ("A", "SOL", "BONK"),
            ("B", "BONK", "SOL"),
            ("conv", "SOL", "USDC"),
        ]

    @pytest.mark.asyncio
    async def test_paper_ledger_receives_profit(self, log):
        """Test the paper ledger credits the profit destination."""
        ledger = PaperLedger(execution_account="wallet")
        orchestrator, _, _ = make_orchestrator(log, transferer=ledger)
        outcome = await orchestrator.execute(PAIR)

        assert ledger.balance("treasury", USDC) == outcome.realized_profit == 38_000


class TestReverification:
    """Test the profitability re-check before borrowing."""

    @pytest.mark.asyncio
    async def test_abort_performs_no_borrow_or_swap(self, log):
        """Test a vanished spread aborts with zero loan or swap calls."""
        orchestrator, lender, _ = make_orchestrator(log, b_rate="2")
        outcome = await orchestrator.execute(PAIR)

        assert not outcome.success
        assert outcome.failure_kind is FailureKind.UNPROFITABLE
        assert outcome.state is ExecutionState.REVERTED
        assert lender.borrows == 0
        assert log == []

    @pytest.mark.asyncio
    async def test_uses_supplied_fee_model(self, log):
        """Test the caller's gas-repriced fee model drives the re-check."""
        orchestrator, lender, _ = make_orchestrator(log)
        outcome = await orchestrator.execute(PAIR, fee_model=FEES.with_gas(10**9))

        assert outcome.failure_kind is FailureKind.UNPROFITABLE
        assert lender.borrows == 0


class TestFailures:
    """Test reverted executions and their compensations."""

    @pytest.mark.asyncio
    async def test_insufficient_profit_unwinds_in_reverse(self, log):
        """Test a short recovery swaps both hops back and returns the principal."""
        orchestrator, _, _ = make_orchestrator(log, b_back_rate="0.5")
        outcome = await orchestrator.execute(PAIR)

        assert not outcome.success
        assert outcome.failure_kind is FailureKind.INSUFFICIENT_PROFIT
        assert outcome.history[-2] is ExecutionState.SECOND_SWAPPED
        assert outcome.history[-1] is ExecutionState.REVERTED
        assert outcome.compensation_errors == []
        assert log[3:] == [
            ("swap", "B", "USDC", "SOL", 1_000_000, 0),
            ("swap", "A", "SOL", "USDC", 2_000_000, 0),
            ("repay", "USDC", 1_000_000),
        ]

    @pytest.mark.asyncio
    async def test_short_fill_is_swapped_back(self, log):
        """Test a hop that executed below its floor is itself reversed."""
        venue_b = FakeVenue(
            "B", {("USDC", "SOL"): "2.1", ("SOL", "USDC"): "0.52"}, log, haircut_bps=100
        )
        orchestrator, _, _ = make_orchestrator(log, venue_b=venue_b)
        outcome = await orchestrator.execute(PAIR)

        assert outcome.failure_kind is FailureKind.SLIPPAGE_EXCEEDED
        assert not outcome.retryable
        assert outcome.history[-2] is ExecutionState.FIRST_SWAPPED
        assert log[-3:] == [
            ("swap", "B", "USDC", "SOL", 1_029_600, 0),
            ("swap", "A", "SOL", "USDC", 2_000_000, 0),
            ("repay", "USDC", 1_000_000),
        ]

    @pytest.mark.asyncio
    async def test_loan_unavailable(self, log):
        """Test a refused loan reverts without any swap."""
        lender = FakeLender(log, fail_borrow={1: LoanUnavailable("dry", asset="USDC")})
        orchestrator, _, _ = make_orchestrator(log, lender=lender)
        outcome = await orchestrator.execute(PAIR)

        assert outcome.failure_kind is FailureKind.LOAN_UNAVAILABLE
        assert log == [("borrow", "USDC", 1_000_000)]

    @pytest.mark.asyncio
    async def test_transfer_failure_refunds_repayment(self, log):
        """Test a failed transfer refunds the repayment before unwinding the hops."""
        transferer = FakeTransferer(log, fail=NetworkError("rpc down"))
        orchestrator, _, _ = make_orchestrator(log, transferer=transferer)
        outcome = await orchestrator.execute(PAIR)

        assert outcome.failure_kind is FailureKind.NETWORK
        assert outcome.retryable
        assert log[5:] == [
            ("refund", "USDC", 1_002_000),
            ("swap", "B", "USDC", "SOL", 1_040_000, 0),
            ("swap", "A", "SOL", "USDC", 2_000_000, 0),
            ("repay", "USDC", 1_000_000),
        ]

    @pytest.mark.asyncio
    async def test_compensation_errors_are_collected(self, log):
        """Test a failing compensation is reported and the rest still run."""
        lender = FakeLender(log, fail_refund=NetworkError("lender gone"))
        transferer = FakeTransferer(log, fail=NetworkError("rpc down"))
        orchestrator, _, _ = make_orchestrator(log, lender=lender, transferer=transferer)
        outcome = await orchestrator.execute(PAIR)

        assert outcome.state is ExecutionState.REVERTED
        assert len(outcome.compensation_errors) == 1
        assert "lender gone" in outcome.compensation_errors[0]
        assert log[-1] == ("repay", "USDC", 1_000_000)

    @pytest.mark.asyncio
    async def test_hung_swap_times_out_as_network(self, log):
        """Test a swap that never answers is bounded and classified transient."""
        venue_a = FakeVenue(
            "A", {("USDC", "SOL"): "2", ("SOL", "USDC"): "0.5"}, log, hang=True
        )
        orchestrator, _, _ = make_orchestrator(log, venue_a=venue_a, step_timeout=0.05)
        outcome = await orchestrator.execute(PAIR)

        assert outcome.failure_kind is FailureKind.NETWORK
        assert log[-1] == ("repay", "USDC", 1_000_000)

    @pytest.mark.asyncio
    async def test_missing_conversion_venue(self, log):
        """Test a pair needing conversion without a conversion venue never borrows."""
        pair = TokenPair(SOL, BONK, trade_amount=1_000_000, loan_amount=1_000_000)
        orchestrator, lender, _ = make_orchestrator(
            log,
            venue_a=FakeVenue("A", {("SOL", "BONK"): "2"}, log),
            venue_b=FakeVenue("B", {("SOL", "BONK"): "2.1"}, log),
        )
        outcome = await orchestrator.execute(pair)

        assert not outcome.success
        assert lender.borrows == 0


class TestRevertRestoresState:
    """Test a reverted execution leaves lender and pool exactly as found."""

    @pytest.mark.asyncio
    async def test_lender_and_pool_unchanged(self, log):
        """Test fees, outstanding principal and pool reserves after a late failure."""
        pool = Pool(asset_0=USDC, asset_1=SOL, reserve_0=10**12, reserve_1=2 * 10**12)
        venue_a = ConstantProductVenue("A", fee_bps=0, pools=[pool])
        lender = PaperLoanVenue(fee_bps=20)
        transferer = FakeTransferer(log, fail=NetworkError("rpc down"))
        orchestrator, _, _ = make_orchestrator(
            log, venue_a=venue_a, lender=lender, transferer=transferer
        )

        outcome = await orchestrator.execute(PAIR)

        assert outcome.state is ExecutionState.REVERTED
        assert outcome.compensation_errors == []
        assert (pool.reserve_0, pool.reserve_1) == (10**12, 2 * 10**12)
        assert lender.outstanding["USDC"] == 0
        assert lender.fees_collected["USDC"] == 0
        assert lender.available(USDC) == lender.default_liquidity

    @pytest.mark.asyncio
    async def test_committed_run_books_fee(self, log):
        """Test the same setup without a failure books the loan fee once."""
        pool = Pool(asset_0=USDC, asset_1=SOL, reserve_0=10**12, reserve_1=2 * 10**12)
        venue_a = ConstantProductVenue("A", fee_bps=0, pools=[pool])
        lender = PaperLoanVenue(fee_bps=20)
        orchestrator, _, _ = make_orchestrator(log, venue_a=venue_a, lender=lender)

        outcome = await orchestrator.execute(PAIR)

        assert outcome.success
        assert lender.outstanding["USDC"] == 0
        assert lender.fees_collected["USDC"] == 2_000
        assert pool.reserve_0 == 10**12 + 1_000_000
