"""
Opportunity monitor.

A single asyncio loop polls every configured pair at a fixed interval:

1. Re-price the gas estimate into each output asset (once per tick).
2. Fetch both venue quotes through a ``QuoteSource``.
3. Run the profitability evaluator with the tick's fee model.
4. On a positive decision, trigger the execution entry point as a task.

Executions for different pairs run concurrently; a pair that is already
executing is skipped until its execution reaches a terminal state. Quote
failures and timeouts are transient: the pair is retried on the next tick.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple, runtime_checkable

from flash_arbitrage.exceptions import failure_kind_of
from flash_arbitrage.fixed_point import PRICE_PRECISION
from flash_arbitrage.interfaces import SystemTimeProvider, TimeProvider
from flash_arbitrage.metrics import ArbitrageMetrics
from flash_arbitrage.utils import format_duration, get_logger

from .evaluator import evaluate
from .fees import FeeModel
from .price_feed import GasCostConverter
from .simulation import decode_price_buffer
from .types import Asset, ExecutionOutcome, PriceQuote, TokenPair
from .venues import Venue

logger = get_logger(__name__)


def _failure_label(outcome: ExecutionOutcome) -> str:
    return outcome.failure_kind.value if outcome.failure_kind else "failed"


@runtime_checkable
class QuoteSource(Protocol):
    async def quotes(self, pair: TokenPair) -> Tuple[PriceQuote, PriceQuote]:
        """Venue A and venue B quotes for ``pair.trade_amount``."""
        ...


@runtime_checkable
class ExecutionTrigger(Protocol):
    async def execute(
        self, pair: TokenPair, fee_model: Optional[FeeModel] = None
    ) -> ExecutionOutcome:
        ...


@runtime_checkable
class PriceCheckSimulator(Protocol):
    async def simulate_price_check(
        self, input_asset: Asset, output_asset: Asset, amount: int
    ) -> bytes:
        ...


class DirectQuoteSource:
    """Reads both venues directly."""

    def __init__(self, venue_a: Venue, venue_b: Venue):
        self.venue_a = venue_a
        self.venue_b = venue_b

    async def quotes(self, pair: TokenPair) -> Tuple[PriceQuote, PriceQuote]:
        quote_a, quote_b = await asyncio.gather(
            self.venue_a.quote(pair.input_asset, pair.output_asset, pair.trade_amount),
            self.venue_b.quote(pair.input_asset, pair.output_asset, pair.trade_amount),
        )
        return quote_a, quote_b


class SimulatedQuoteSource:
    """
    Prices both venues in one read-only program simulation.

    The simulation returns prices, not amounts, so each is wrapped in a quote
    of PRICE_PRECISION input units whose ``price`` equals the simulated value.
    """

    def __init__(
        self,
        simulator: PriceCheckSimulator,
        venue_a_id: str,
        venue_b_id: str,
        venue_a_fee_bps: int = 0,
        venue_b_fee_bps: int = 0,
    ):
        self.simulator = simulator
        self.venue_a_id = venue_a_id
        self.venue_b_id = venue_b_id
        self.venue_a_fee_bps = venue_a_fee_bps
        self.venue_b_fee_bps = venue_b_fee_bps

    def _quote(self, venue_id: str, fee_bps: int, pair: TokenPair, price: int) -> PriceQuote:
        return PriceQuote(
            venue_id=venue_id,
            input_asset=pair.input_asset,
            output_asset=pair.output_asset,
            input_amount=PRICE_PRECISION,
            output_amount=price,
            fee_bps=fee_bps,
        )

    async def quotes(self, pair: TokenPair) -> Tuple[PriceQuote, PriceQuote]:
        data = await self.simulator.simulate_price_check(
            pair.input_asset, pair.output_asset, pair.trade_amount
        )
        price_a, price_b = decode_price_buffer(data)
        return (
            self._quote(self.venue_a_id, self.venue_a_fee_bps, pair, price_a),
            self._quote(self.venue_b_id, self.venue_b_fee_bps, pair, price_b),
        )


class InFlightRegistry:
    """Pair ids with an execution in flight; acquiring an occupied id fails."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._pairs: Set[str] = set()

    async def try_acquire(self, pair_id: str) -> bool:
        async with self._lock:
            if pair_id in self._pairs:
                return False
            self._pairs.add(pair_id)
            return True

    async def release(self, pair_id: str) -> None:
        async with self._lock:
            self._pairs.discard(pair_id)

    def __contains__(self, pair_id: str) -> bool:
        return pair_id in self._pairs

    def __len__(self) -> int:
        return len(self._pairs)


@dataclass
class PairStats:
    """Running counters for one pair."""

    evaluations: int = 0
    opportunities: int = 0
    executions: int = 0
    successes: int = 0
    skipped_in_flight: int = 0
    transient_failures: int = 0
    evaluation_errors: int = 0
    realized_profit: int = 0
    failures: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_opportunity_at: Optional[float] = None

    def record_outcome(self, outcome: ExecutionOutcome) -> None:
        self.executions += 1
        if outcome.success:
            self.successes += 1
            self.realized_profit += outcome.realized_profit
        elif outcome.failure_kind is not None:
            self.failures[outcome.failure_kind.value] += 1


class OpportunityMonitor:
    """
    Polls pairs, evaluates them and triggers executions.

    Args:
        pairs: Watch-list
        quote_source: Where quotes come from each tick
        executor: Execution entry point (orchestrator or chain client)
        fee_model: Base fee model; its gas estimate is in settlement units
        settlement_asset: Loan asset; pairs with another input need conversion
        gas_converter: Re-prices gas into output units; None uses it as-is
        poll_interval: Seconds between the starts of consecutive ticks
        request_timeout: Bound for one quote fetch in seconds
        metrics: Optional Prometheus metrics
        time_provider: Clock for statistics and durations
    """

    def __init__(
        self,
        pairs: Iterable[TokenPair],
        quote_source: QuoteSource,
        executor: ExecutionTrigger,
        fee_model: FeeModel,
        settlement_asset: Optional[Asset] = None,
        gas_converter: Optional[GasCostConverter] = None,
        poll_interval: float = 1.0,
        request_timeout: float = 10.0,
        metrics: Optional[ArbitrageMetrics] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.pairs: List[TokenPair] = list(pairs)
        self.quote_source = quote_source
        self.executor = executor
        self.fee_model = fee_model
        self.settlement_asset = settlement_asset
        self.gas_converter = gas_converter
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.metrics = metrics
        self.time_provider = time_provider or SystemTimeProvider()

        self.in_flight = InFlightRegistry()
        self.stats: Dict[str, PairStats] = {p.pair_id: PairStats() for p in self.pairs}
        self.ticks = 0
        self._tasks: Set[asyncio.Task] = set()
        self._running = False
        self._stop_event = asyncio.Event()

    def needs_conversion(self, pair: TokenPair) -> bool:
        return self.settlement_asset is not None and pair.input_asset != self.settlement_asset

    async def _gas_for_tick(self) -> Dict[str, int]:
        if self.gas_converter is None:
            return {p.output_asset.symbol: self.fee_model.gas_estimate for p in self.pairs}
        try:
            return await self.gas_converter.gas_in(
                self.fee_model.gas_estimate, [p.output_asset for p in self.pairs]
            )
        except Exception as e:
            logger.warning(f"Gas conversion unavailable this tick: {e}")
            return {}

    async def evaluate_pair(self, pair: TokenPair, gas_estimate: int) -> None:
        """Quote, evaluate and (maybe) trigger one pair."""
        stats = self.stats[pair.pair_id]

        if pair.pair_id in self.in_flight:
            stats.skipped_in_flight += 1
            if self.metrics:
                self.metrics.record_skip(pair.pair_id)
            logger.debug(f"{pair.pair_id}: execution in flight, skipping")
            return

        fee_model = self.fee_model.with_gas(gas_estimate)
        try:
            quote_a, quote_b = await asyncio.wait_for(
                self.quote_source.quotes(pair), timeout=self.request_timeout
            )
            opportunity = evaluate(
                quote_a,
                quote_b,
                pair.trade_amount,
                fee_model,
                needs_conversion=self.needs_conversion(pair),
                pair=pair,
            )
        except Exception as e:
            kind = failure_kind_of(e)
            if self.metrics:
                self.metrics.record_evaluation(pair.pair_id, kind.value)
            if kind.retryable:
                stats.transient_failures += 1
                logger.warning(f"{pair.pair_id}: quotes unavailable, retrying next tick: {e}")
            else:
                stats.evaluation_errors += 1
                logger.error(f"{pair.pair_id}: evaluation failed ({kind.value}): {e}")
            return

        stats.evaluations += 1
        if opportunity is None:
            if self.metrics:
                self.metrics.record_evaluation(pair.pair_id, "no_opportunity")
            logger.debug(
                f"{pair.pair_id}: no opportunity (A {quote_a.price}, B {quote_b.price})"
            )
            return

        stats.opportunities += 1
        stats.last_opportunity_at = self.time_provider.current_timestamp()
        if self.metrics:
            self.metrics.record_evaluation(pair.pair_id, "opportunity")
        costs = fee_model.breakdown(pair.trade_amount, self.needs_conversion(pair))
        logger.info(
            f"{pair.pair_id}: opportunity {opportunity.direction.value} "
            f"spread {opportunity.spread}, {costs.format_log()}, "
            f"expected profit {opportunity.expected_profit}"
        )
        await self.trigger(pair, fee_model)

    async def trigger(self, pair: TokenPair, fee_model: Optional[FeeModel] = None) -> bool:
        """
        Start an execution for ``pair`` unless one is already in flight.

        Returns:
            True if an execution task was started, False if rejected
        """
        if not await self.in_flight.try_acquire(pair.pair_id):
            self.stats[pair.pair_id].skipped_in_flight += 1
            if self.metrics:
                self.metrics.record_skip(pair.pair_id)
            logger.debug(f"{pair.pair_id}: trigger rejected, execution in flight")
            return False

        if self.metrics:
            self.metrics.in_flight.inc()
        task = asyncio.create_task(self._execute(pair, fee_model))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _execute(self, pair: TokenPair, fee_model: Optional[FeeModel]) -> ExecutionOutcome:
        start = self.time_provider.monotonic()
        try:
            outcome = await self.executor.execute(pair, fee_model)
        except Exception as e:
            outcome = ExecutionOutcome.reverted(failure_kind_of(e), str(e))
        finally:
            await self.in_flight.release(pair.pair_id)
            if self.metrics:
                self.metrics.in_flight.dec()

        duration = self.time_provider.monotonic() - start
        self.stats[pair.pair_id].record_outcome(outcome)
        if self.metrics:
            label = "success" if outcome.success else _failure_label(outcome)
            self.metrics.record_execution(
                pair.pair_id, label, outcome.realized_profit, duration
            )

        if outcome.success:
            logger.info(
                f"{pair.pair_id}: execution succeeded, profit {outcome.realized_profit} "
                f"({format_duration(duration)})"
            )
        else:
            retry = " (transient)" if outcome.retryable else ""
            logger.warning(
                f"{pair.pair_id}: execution reverted: {_failure_label(outcome)}{retry}"
                f" - {outcome.error}"
            )
        return outcome

    async def tick(self) -> None:
        """One polling cycle over every pair."""
        gas = await self._gas_for_tick()
        for pair in self.pairs:
            gas_estimate = gas.get(pair.output_asset.symbol)
            if gas_estimate is None:
                self.stats[pair.pair_id].transient_failures += 1
                if self.metrics:
                    self.metrics.record_evaluation(pair.pair_id, "no_gas_price")
                logger.warning(
                    f"{pair.pair_id}: no price for {pair.output_asset}, skipping this tick"
                )
                continue
            await self.evaluate_pair(pair, gas_estimate)

        self.ticks += 1
        if self.metrics:
            self.metrics.ticks_total.inc()

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """
        Poll until ``stop()`` is called or ``max_ticks`` ticks have run.

        In-flight executions are awaited before returning. A ``stop()`` that
        arrives before ``run()`` makes it return without ticking.
        """
        self._running = not self._stop_event.is_set()
        logger.info(
            f"Monitoring {len(self.pairs)} pair(s) every {self.poll_interval}s"
        )
        ticks = 0
        try:
            while self._running:
                started = self.time_provider.monotonic()
                await self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break

                remaining = self.poll_interval - (self.time_provider.monotonic() - started)
                if remaining > 0:
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._running = False
            self._stop_event.clear()
            await self.drain()

    def stop(self) -> None:
        """Stop polling after the current tick; executions are not cancelled."""
        self._running = False
        self._stop_event.set()

    async def drain(self) -> None:
        """Wait for every in-flight execution to reach a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def summary(self) -> str:
        lines = [f"Ticks: {self.ticks}"]
        for pair_id, s in self.stats.items():
            failures = ", ".join(f"{k}={v}" for k, v in sorted(s.failures.items())) or "none"
            lines.append(
                f"{pair_id}: evaluations={s.evaluations} opportunities={s.opportunities} "
                f"executions={s.executions} successes={s.successes} "
                f"profit={s.realized_profit} skipped={s.skipped_in_flight} "
                f"transient={s.transient_failures} errors={s.evaluation_errors} "
                f"failures[{failures}]"
            )
        return "\n".join(lines)
