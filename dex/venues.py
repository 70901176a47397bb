"""
Venue quoters.

Two kinds of liquidity venue sit behind one ``Venue`` protocol with exactly
two operations, ``quote`` and ``swap``:

- ``ConstantProductVenue``: x*y=k pools whose reserves are read from chain
  (or seeded from config in paper mode) and priced locally.
- ``RoutedVenue``: an aggregator that answers quotes itself; its output
  amount is trusted as-is.

Each concrete venue carries a ``kind`` tag so callers can branch on the
variant without isinstance checks.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from web3 import Web3

from flash_arbitrage.exceptions import CalculationError, InvalidTokenAccount, SlippageExceeded
from flash_arbitrage.fixed_point import checked_add, checked_sub
from flash_arbitrage.utils import get_logger

from .adapters.constant_product import fetch_reserves_async, swap_out
from .types import Asset, PriceQuote

logger = get_logger(__name__)

DEFAULT_MAX_SLIPPAGE_BPS = 50


class VenueKind(Enum):
    CONSTANT_PRODUCT = "constant_product"
    ROUTED = "routed"


@runtime_checkable
class Venue(Protocol):
    """Quote/swap capability shared by every liquidity venue."""

    venue_id: str
    kind: VenueKind
    fee_bps: int
    max_slippage_bps: int

    async def quote(
        self,
        input_asset: Asset,
        output_asset: Asset,
        amount: int,
        max_slippage_bps: Optional[int] = None,
    ) -> PriceQuote:
        ...

    async def swap(
        self, input_asset: Asset, output_asset: Asset, amount: int, min_output: int
    ) -> int:
        ...


@runtime_checkable
class RouteProvider(Protocol):
    """What a routed venue needs from its aggregator client."""

    async def get_quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> Tuple[int, Dict[str, Any]]:
        ...

    async def execute_swap(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        min_output: int,
        slippage_bps: int,
    ) -> int:
        ...


@dataclass
class Pool:
    """
    Mirror of one constant-product pool.

    Attributes:
        asset_0: First token of the pool
        asset_1: Second token of the pool
        reserve_0: Reserve of asset_0 (raw units)
        reserve_1: Reserve of asset_1 (raw units)
        address: Pair contract address; reserves are refreshed from it when set
    """

    asset_0: Asset
    asset_1: Asset
    reserve_0: int = 0
    reserve_1: int = 0
    address: Optional[str] = None

    def holds(self, a: Asset, b: Asset) -> bool:
        return {a, b} == {self.asset_0, self.asset_1}

    def reserves_for(self, input_asset: Asset) -> Tuple[int, int]:
        if input_asset == self.asset_0:
            return self.reserve_0, self.reserve_1
        return self.reserve_1, self.reserve_0

    def set_reserves(self, input_asset: Asset, reserve_in: int, reserve_out: int) -> None:
        if input_asset == self.asset_0:
            self.reserve_0, self.reserve_1 = reserve_in, reserve_out
        else:
            self.reserve_1, self.reserve_0 = reserve_in, reserve_out


class ConstantProductVenue:
    """
    Constant-product AMM venue.

    Quotes are computed from current reserves on every call. Swaps are
    simulated against the local reserve mirror: the input joins the pool and
    only the net output leaves, so the fee stays in the pool. ``unwind``
    applies the exact inverse reserve change of a completed swap.
    """

    kind = VenueKind.CONSTANT_PRODUCT

    def __init__(
        self,
        venue_id: str,
        fee_bps: int,
        pools: Iterable[Pool],
        max_slippage_bps: int = DEFAULT_MAX_SLIPPAGE_BPS,
        web3: Optional[Web3] = None,
        timeout: float = 10.0,
    ):
        self.venue_id = venue_id
        self.fee_bps = fee_bps
        self.max_slippage_bps = max_slippage_bps
        self.pools: List[Pool] = list(pools)
        self.web3 = web3
        self.timeout = timeout

    def _pool_for(self, input_asset: Asset, output_asset: Asset) -> Pool:
        for pool in self.pools:
            if pool.holds(input_asset, output_asset):
                return pool
        raise InvalidTokenAccount(
            f"{self.venue_id} has no pool for {input_asset}/{output_asset}",
            asset=input_asset.symbol,
        )

    async def _current_reserves(self, pool: Pool, input_asset: Asset) -> Tuple[int, int]:
        if self.web3 is not None and pool.address:
            reserve_in, reserve_out = await fetch_reserves_async(
                self.web3, pool.address, input_asset.address, timeout=self.timeout
            )
            pool.set_reserves(input_asset, reserve_in, reserve_out)
        return pool.reserves_for(input_asset)

    async def quote(
        self,
        input_asset: Asset,
        output_asset: Asset,
        amount: int,
        max_slippage_bps: Optional[int] = None,
    ) -> PriceQuote:
        pool = self._pool_for(input_asset, output_asset)
        reserve_in, reserve_out = await self._current_reserves(pool, input_asset)
        result = swap_out(amount, reserve_in, reserve_out, self.fee_bps)
        return PriceQuote(
            venue_id=self.venue_id,
            input_asset=input_asset,
            output_asset=output_asset,
            input_amount=amount,
            output_amount=result.net_out,
            fee_bps=self.fee_bps,
        )

    async def swap(
        self, input_asset: Asset, output_asset: Asset, amount: int, min_output: int
    ) -> int:
        pool = self._pool_for(input_asset, output_asset)
        reserve_in, reserve_out = pool.reserves_for(input_asset)
        result = swap_out(amount, reserve_in, reserve_out, self.fee_bps)

        if result.net_out < min_output:
            raise SlippageExceeded(
                f"{self.venue_id}: output {result.net_out} < min {min_output}",
                venue=self.venue_id,
                min_output=min_output,
                actual=result.net_out,
            )

        pool.set_reserves(
            input_asset,
            checked_add(reserve_in, amount),
            checked_sub(reserve_out, result.net_out),
        )
        logger.debug(
            f"{self.venue_id} swap {amount} {input_asset} -> {result.net_out} {output_asset}"
        )
        return result.net_out

    async def unwind(
        self, input_asset: Asset, output_asset: Asset, amount_in: int, amount_out: int
    ) -> None:
        """Take back a completed ``swap``: the pool returns to its prior reserves."""
        pool = self._pool_for(input_asset, output_asset)
        reserve_in, reserve_out = pool.reserves_for(input_asset)
        pool.set_reserves(
            input_asset,
            checked_sub(reserve_in, amount_in),
            checked_add(reserve_out, amount_out),
        )
        logger.debug(
            f"{self.venue_id} unwind {amount_in} {input_asset} -> {amount_out} {output_asset}"
        )


class RoutedVenue:
    """Aggregator venue; delegates quoting and swapping to a route provider."""

    kind = VenueKind.ROUTED

    def __init__(
        self,
        venue_id: str,
        fee_bps: int,
        provider: RouteProvider,
        max_slippage_bps: int = 30,
    ):
        self.venue_id = venue_id
        self.fee_bps = fee_bps
        self.provider = provider
        self.max_slippage_bps = max_slippage_bps

    async def quote(
        self,
        input_asset: Asset,
        output_asset: Asset,
        amount: int,
        max_slippage_bps: Optional[int] = None,
    ) -> PriceQuote:
        if amount <= 0:
            raise CalculationError(f"{self.venue_id}: cannot quote amount {amount}")
        slippage = self.max_slippage_bps if max_slippage_bps is None else max_slippage_bps
        out_amount, _ = await self.provider.get_quote(
            input_asset.address, output_asset.address, amount, slippage
        )
        if out_amount < 0:
            raise CalculationError(f"{self.venue_id}: negative quote {out_amount}")
        return PriceQuote(
            venue_id=self.venue_id,
            input_asset=input_asset,
            output_asset=output_asset,
            input_amount=amount,
            output_amount=out_amount,
            fee_bps=self.fee_bps,
        )

    async def swap(
        self, input_asset: Asset, output_asset: Asset, amount: int, min_output: int
    ) -> int:
        if amount <= 0:
            raise CalculationError(f"{self.venue_id}: cannot swap amount {amount}")
        return await self.provider.execute_swap(
            input_asset.address,
            output_asset.address,
            amount,
            min_output,
            self.max_slippage_bps,
        )
