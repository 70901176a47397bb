"""
Unit tests for the opportunity monitor
"""

import asyncio
import logging
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest
from prometheus_client import CollectorRegistry

from dex.fees import FeeModel
from dex.monitor import (
    DirectQuoteSource,
    InFlightRegistry,
    OpportunityMonitor,
    PairStats,
    SimulatedQuoteSource,
)
from dex.price_feed import GasCostConverter, StaticPriceFeed
from dex.simulation import encode_price_buffer
from dex.types import Asset, ExecutionOutcome, ExecutionState, PriceQuote, TokenPair
from flash_arbitrage.exceptions import (
    CalculationError,
    FailureKind,
    NetworkError,
    SimulationError,
)
from flash_arbitrage.fixed_point import PRICE_PRECISION
from flash_arbitrage.interfaces import DeterministicTimeProvider
from flash_arbitrage.metrics import ArbitrageMetrics

USDC = Asset("USDC", "0x" + "01" * 20, 6)
SOL = Asset("SOL", "0x" + "02" * 20, 9)
ETH = Asset("ETH", "0x" + "04" * 20, 18)

PAIR = TokenPair(USDC, SOL, trade_amount=100_000, loan_amount=100_000)
PAIR_2 = TokenPair(USDC, ETH, trade_amount=100_000, loan_amount=100_000)

FEES = FeeModel(
    loan_fee_bps=0, venue_a_fee_bps=0, venue_b_fee_bps=0, conversion_fee_bps=0, gas_estimate=600
)


def quote(pair, price, venue="a"):
    return PriceQuote(venue, pair.input_asset, pair.output_asset, PRICE_PRECISION, price, 0)


class StaticQuotes:
    """Quote source returning fixed prices per pair."""

    def __init__(self, prices, errors=None):
        self.prices = prices
        self.errors = errors or {}
        self.calls = 0

    async def quotes(self, pair):
        self.calls += 1
        if pair.pair_id in self.errors:
            raise self.errors[pair.pair_id]
        price_a, price_b = self.prices[pair.pair_id]
        return quote(pair, price_a, "a"), quote(pair, price_b, "b")


class GatedExecutor:
    """Executor whose executions block until released."""

    def __init__(self, outcome=None):
        self.release = asyncio.Event()
        self.calls = []
        self.outcome = outcome or ExecutionOutcome(
            success=True, realized_profit=4_000, state=ExecutionState.PROFIT_TRANSFERRED
        )

    async def execute(self, pair, fee_model=None):
        self.calls.append((pair.pair_id, fee_model))
        await self.release.wait()
        return self.outcome


def make_monitor(quotes, executor, pairs=(PAIR,), **kwargs):
    return OpportunityMonitor(
        pairs=list(pairs),
        quote_source=quotes,
        executor=executor,
        fee_model=FEES,
        settlement_asset=USDC,
        poll_interval=0.01,
        request_timeout=kwargs.pop("request_timeout", 1.0),
        time_provider=DeterministicTimeProvider(),
        **kwargs,
    )


class TestInFlightRegistry:
    """Test the per-pair in-flight registry."""

    @pytest.mark.asyncio
    async def test_second_acquire_rejected(self):
        """Test an occupied pair id cannot be acquired until released."""
        registry = InFlightRegistry()
        assert await registry.try_acquire("USDC/SOL")
        assert not await registry.try_acquire("USDC/SOL")
        assert "USDC/SOL" in registry
        await registry.release("USDC/SOL")
        assert await registry.try_acquire("USDC/SOL")

    @pytest.mark.asyncio
    async def test_concurrent_acquire_single_winner(self):
        """Test concurrent acquires of one id have exactly one winner."""
        registry = InFlightRegistry()
        results = await asyncio.gather(*[registry.try_acquire("p") for _ in range(10)])
        assert results.count(True) == 1
        assert len(registry) == 1


class TestSingleFlight:
    """Test at most one execution per pair is in flight."""

    @pytest.mark.asyncio
    async def test_concurrent_triggers_one_execution(self):
        """Test two simultaneous triggers start one execution."""
        executor = GatedExecutor()
        monitor = make_monitor(StaticQuotes({}), executor)

        started = await asyncio.gather(monitor.trigger(PAIR), monitor.trigger(PAIR))
        await asyncio.sleep(0)

        assert sorted(started) == [False, True]
        assert len(executor.calls) == 1
        assert monitor.stats[PAIR.pair_id].skipped_in_flight == 1

        executor.release.set()
        await monitor.drain()
        assert PAIR.pair_id not in monitor.in_flight
        assert monitor.stats[PAIR.pair_id].successes == 1

    @pytest.mark.asyncio
    async def test_tick_skips_pair_in_flight(self):
        """Test a tick does not even quote a pair that is executing."""
        quotes = StaticQuotes({PAIR.pair_id: (1_050_000, 1_000_000)})
        executor = GatedExecutor()
        monitor = make_monitor(quotes, executor)

        await monitor.tick()
        await asyncio.sleep(0)
        await monitor.tick()

        assert len(executor.calls) == 1
        assert quotes.calls == 1
        assert monitor.stats[PAIR.pair_id].skipped_in_flight == 1

        executor.release.set()
        await monitor.drain()

    @pytest.mark.asyncio
    async def test_different_pairs_run_concurrently(self):
        """Test executions for different pairs overlap."""
        quotes = StaticQuotes(
            {PAIR.pair_id: (1_050_000, 1_000_000), PAIR_2.pair_id: (1_050_000, 1_000_000)}
        )
        executor = GatedExecutor()
        monitor = make_monitor(quotes, executor, pairs=(PAIR, PAIR_2))

        await monitor.tick()
        await asyncio.sleep(0)

        assert sorted(c[0] for c in executor.calls) == ["USDC/ETH", "USDC/SOL"]
        assert len(monitor.in_flight) == 2

        executor.release.set()
        await monitor.drain()
        assert len(monitor.in_flight) == 0


class TestTick:
    """Test one polling cycle."""

    @pytest.mark.asyncio
    async def test_opportunity_triggers_with_tick_fee_model(self):
        """Test a positive decision triggers with the tick's fee model."""
        quotes = StaticQuotes({PAIR.pair_id: (1_050_000, 1_000_000)})
        executor = GatedExecutor()
        executor.release.set()
        monitor = make_monitor(quotes, executor)

        await monitor.tick()
        await monitor.drain()

        stats = monitor.stats[PAIR.pair_id]
        assert stats.evaluations == 1
        assert stats.opportunities == 1
        assert stats.realized_profit == 4_000
        assert executor.calls[0][1].gas_estimate == 600

    @pytest.mark.asyncio
    async def test_opportunity_log_carries_cost_breakdown(self, caplog):
        """Test the opportunity line logs every cost term."""
        quotes = StaticQuotes({PAIR.pair_id: (1_050_000, 1_000_000)})
        executor = GatedExecutor()
        executor.release.set()
        monitor = make_monitor(quotes, executor)

        with caplog.at_level(logging.INFO, logger="dex.monitor"):
            await monitor.tick()
            await monitor.drain()

        line = next(r.getMessage() for r in caplog.records if "opportunity" in r.getMessage())
        assert "cost " in line
        assert "+ slippage " in line
        assert "+ gas 600" in line

    @pytest.mark.asyncio
    async def test_no_opportunity(self):
        """Test equal prices are evaluated without a trigger."""
        quotes = StaticQuotes({PAIR.pair_id: (1_000_000, 1_000_000)})
        executor = GatedExecutor()
        monitor = make_monitor(quotes, executor)

        await monitor.tick()

        assert executor.calls == []
        assert monitor.stats[PAIR.pair_id].evaluations == 1
        assert monitor.ticks == 1

    @pytest.mark.asyncio
    async def test_quote_timeout_is_transient(self):
        """Test a hung quote source is bounded and retried next tick."""
        async def hang(pair):
            await asyncio.sleep(10)

        quotes = Mock()
        quotes.quotes = hang
        monitor = make_monitor(quotes, GatedExecutor(), request_timeout=0.05)

        await monitor.tick()

        assert monitor.stats[PAIR.pair_id].transient_failures == 1
        assert monitor.stats[PAIR.pair_id].evaluations == 0

    @pytest.mark.asyncio
    async def test_quote_error_does_not_stop_other_pairs(self):
        """Test one pair's network failure does not block the others."""
        quotes = StaticQuotes(
            {PAIR_2.pair_id: (1_000_000, 1_000_000)},
            errors={PAIR.pair_id: NetworkError("rpc down")},
        )
        monitor = make_monitor(quotes, GatedExecutor(), pairs=(PAIR, PAIR_2))

        await monitor.tick()

        assert monitor.stats[PAIR.pair_id].transient_failures == 1
        assert monitor.stats[PAIR_2.pair_id].evaluations == 1

    @pytest.mark.asyncio
    async def test_calculation_error_is_not_transient(self):
        """Test non-retryable evaluation errors are counted apart from transient ones."""
        quotes = StaticQuotes({}, errors={PAIR.pair_id: CalculationError("overflow")})
        monitor = make_monitor(quotes, GatedExecutor())

        await monitor.tick()

        stats = monitor.stats[PAIR.pair_id]
        assert stats.evaluation_errors == 1
        assert stats.transient_failures == 0
        assert "errors=1" in monitor.summary()

    @pytest.mark.asyncio
    async def test_failed_execution_recorded_by_kind(self):
        """Test reverted executions are counted by failure kind."""
        quotes = StaticQuotes({PAIR.pair_id: (1_050_000, 1_000_000)})
        executor = GatedExecutor(
            ExecutionOutcome.reverted(FailureKind.SLIPPAGE_EXCEEDED, "moved")
        )
        executor.release.set()
        metrics = ArbitrageMetrics(CollectorRegistry())
        monitor = make_monitor(quotes, executor, metrics=metrics)

        await monitor.tick()
        await monitor.drain()

        stats = monitor.stats[PAIR.pair_id]
        assert stats.failures == {"slippage_exceeded": 1}
        assert stats.successes == 0
        value = metrics.registry.get_sample_value(
            "flash_arbitrage_executions_total",
            {"pair": PAIR.pair_id, "outcome": "slippage_exceeded"},
        )
        assert value == 1.0

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_outcome(self):
        """Test an executor that raises still yields a recorded outcome."""
        quotes = StaticQuotes({PAIR.pair_id: (1_050_000, 1_000_000)})
        executor = Mock()
        executor.execute = AsyncMock(side_effect=NetworkError("boom"))
        monitor = make_monitor(quotes, executor)

        await monitor.tick()
        await monitor.drain()

        assert monitor.stats[PAIR.pair_id].failures == {"network": 1}
        assert PAIR.pair_id not in monitor.in_flight


class TestGasConversion:
    """Test per-tick gas repricing."""

    @pytest.mark.asyncio
    async def test_missing_price_skips_pair(self):
        """Test a pair whose output asset has no price is skipped."""
        quotes = StaticQuotes({PAIR.pair_id: (1_050_000, 1_000_000)})
        converter = GasCostConverter(StaticPriceFeed({"USDC": 1.0}), USDC)
        monitor = make_monitor(quotes, GatedExecutor(), gas_converter=converter)

        await monitor.tick()

        assert quotes.calls == 0
        assert monitor.stats[PAIR.pair_id].transient_failures == 1

    @pytest.mark.asyncio
    async def test_gas_repriced_into_output_units(self):
        """Test the gas estimate is converted into output-asset units."""
        quotes = StaticQuotes({PAIR.pair_id: (1_050_000, 1_000_000)})
        executor = GatedExecutor()
        executor.release.set()
        converter = GasCostConverter(StaticPriceFeed({"USDC": 1.0, "SOL": 150.0}), USDC)
        monitor = make_monitor(quotes, executor, gas_converter=converter)

        await monitor.tick()
        await monitor.drain()

        # 600 raw USDC = 0.0006 USD = 0.000004 SOL = 4_000 lamports
        assert executor.calls[0][1].gas_estimate == 4_000


class TestRunLoop:
    """Test the polling loop lifecycle."""

    @pytest.mark.asyncio
    async def test_max_ticks(self):
        """Test run stops after the requested number of ticks."""
        quotes = StaticQuotes({PAIR.pair_id: (1_000_000, 1_000_000)})
        monitor = make_monitor(quotes, GatedExecutor())

        await monitor.run(max_ticks=3)

        assert monitor.ticks == 3
        assert quotes.calls == 3

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight(self):
        """Test stop ends polling but waits for running executions."""
        quotes = StaticQuotes({PAIR.pair_id: (1_050_000, 1_000_000)})
        executor = GatedExecutor()
        monitor = make_monitor(quotes, executor)

        runner = asyncio.create_task(monitor.run())
        await asyncio.sleep(0.05)
        monitor.stop()
        await asyncio.sleep(0.05)

        # Loop stopped but the execution is still draining
        assert not runner.done()

        executor.release.set()
        await asyncio.wait_for(runner, timeout=1.0)
        assert monitor.stats[PAIR.pair_id].successes == 1

    @pytest.mark.asyncio
    async def test_stop_before_run_is_kept(self):
        """Test a stop issued before run makes it return without ticking."""
        quotes = StaticQuotes({PAIR.pair_id: (1_000_000, 1_000_000)})
        monitor = make_monitor(quotes, GatedExecutor())

        monitor.stop()
        await asyncio.wait_for(monitor.run(), timeout=1.0)
        assert monitor.ticks == 0
        assert quotes.calls == 0

        # The stop request is consumed; a later run polls normally
        await monitor.run(max_ticks=1)
        assert monitor.ticks == 1

    def test_summary_lists_pairs(self):
        """Test the summary has a line per pair with failure counts."""
        monitor = make_monitor(StaticQuotes({}), GatedExecutor(), pairs=(PAIR, PAIR_2))
        monitor.stats[PAIR.pair_id].failures["network"] += 2
        text = monitor.summary()
        assert "USDC/SOL" in text and "USDC/ETH" in text
        assert "network=2" in text


class TestQuoteSources:
    """Test the two quote sources."""

    @pytest.mark.asyncio
    async def test_direct_quote_source(self):
        """Test direct quotes ask each venue for the trade amount."""
        venue_a, venue_b = Mock(), Mock()
        venue_a.quote = AsyncMock(return_value=quote(PAIR, 1_000_000, "a"))
        venue_b.quote = AsyncMock(return_value=quote(PAIR, 1_100_000, "b"))

        qa, qb = await DirectQuoteSource(venue_a, venue_b).quotes(PAIR)

        assert (qa.venue_id, qb.venue_id) == ("a", "b")
        venue_a.quote.assert_awaited_once_with(USDC, SOL, PAIR.trade_amount)

    @pytest.mark.asyncio
    async def test_simulated_quote_source_prices_exact(self):
        """Test simulated prices come back unchanged."""
        simulator = Mock()
        simulator.simulate_price_check = AsyncMock(
            return_value=encode_price_buffer(1_050_000, 999_999)
        )
        source = SimulatedQuoteSource(simulator, "pool-a", "router-b")

        qa, qb = await source.quotes(PAIR)

        assert qa.price == 1_050_000
        assert qb.price == 999_999
        assert qb.venue_id == "router-b"

    @pytest.mark.asyncio
    async def test_simulated_short_buffer(self):
        """Test a truncated price buffer is a simulation error."""
        simulator = Mock()
        simulator.simulate_price_check = AsyncMock(return_value=b"\x00" * 15)
        with pytest.raises(SimulationError):
            await SimulatedQuoteSource(simulator, "a", "b").quotes(PAIR)


def test_pair_stats_record_outcome():
    """Test outcomes update counters and profit."""
    stats = PairStats()
    stats.record_outcome(ExecutionOutcome(success=True, realized_profit=7))
    stats.record_outcome(ExecutionOutcome.reverted(FailureKind.NETWORK, "x"))
    assert stats.executions == 2
    assert stats.realized_profit == 7
    assert stats.failures["network"] == 1
