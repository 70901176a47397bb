"""
Settlement-asset price lookup for gas-cost conversion.

The fee model's gas estimate is denominated in the settlement asset while a
spread is measured in the pair's output asset. Once per monitor tick the gas
estimate is re-expressed in output units through USD prices fetched here.

Prices are cached with a TTL; when a refresh fails a stale cached value is
served with a warning, and only a symbol that was never priced is reported
as missing.
"""

import asyncio
from decimal import Decimal
from typing import Dict, Iterable, Optional, Protocol, Tuple, runtime_checkable

import aiohttp

from flash_arbitrage.interfaces import SystemTimeProvider, TimeProvider
from flash_arbitrage.utils import get_logger

from .types import Asset

logger = get_logger(__name__)


@runtime_checkable
class PriceFeed(Protocol):
    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        """USD prices for the symbols that could be priced; others are omitted."""
        ...


class StaticPriceFeed:
    """Fixed prices from configuration (paper mode and tests)."""

    def __init__(self, prices: Dict[str, float]):
        self.prices = {symbol: Decimal(str(p)) for symbol, p in prices.items()}

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        return {s: self.prices[s] for s in symbols if s in self.prices}


class CoinGeckoPriceFeed:
    """
    Fetches and caches USD prices from the CoinGecko simple-price API.

    Args:
        ids: Asset symbol -> CoinGecko id (e.g. {"SOL": "solana"})
        base_url: API root
        vs_currency: Quote currency of the returned prices
        cache_ttl: Seconds a fetched price stays fresh
        timeout: Bounded timeout for one request in seconds
        time_provider: Clock used for cache expiry
        session: Optional shared aiohttp session
    """

    def __init__(
        self,
        ids: Dict[str, str],
        base_url: str = "https://api.coingecko.com/api/v3",
        vs_currency: str = "usd",
        cache_ttl: float = 5.0,
        timeout: float = 10.0,
        time_provider: Optional[TimeProvider] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.ids = dict(ids)
        self.base_url = base_url.rstrip("/")
        self.vs_currency = vs_currency
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self.time_provider = time_provider or SystemTimeProvider()
        self._session = session
        self._owns_session = session is None
        self.price_cache: Dict[str, Tuple[Decimal, float]] = {}  # {symbol: (price, fetched_at)}

        logger.info(f"Price feed initialized with {len(self.ids)} supported tokens")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()

    def _fresh(self, symbol: str) -> Optional[Decimal]:
        cached = self.price_cache.get(symbol)
        if cached is None:
            return None
        price, fetched_at = cached
        if self.time_provider.monotonic() - fetched_at < self.cache_ttl:
            return price
        return None

    async def _fetch(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        wanted = {s: self.ids[s] for s in symbols if s in self.ids}
        if not wanted:
            return {}

        params = {
            "ids": ",".join(sorted(set(wanted.values()))),
            "vs_currencies": self.vs_currency,
        }
        try:
            session = await self._get_session()
            async with session.get(f"{self.base_url}/simple/price", params=params) as resp:
                if resp.status != 200:
                    logger.warning(f"CoinGecko API returned HTTP {resp.status}")
                    return {}
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"CoinGecko API request failed: {e}")
            return {}

        prices = {}
        for symbol, coin_id in wanted.items():
            value = data.get(coin_id, {}).get(self.vs_currency)
            if value:
                prices[symbol] = Decimal(str(value))
            else:
                logger.warning(f"Missing {self.vs_currency} price for {symbol} ({coin_id})")
        return prices

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        symbols = list(dict.fromkeys(symbols))
        result: Dict[str, Decimal] = {}
        stale = []
        for symbol in symbols:
            price = self._fresh(symbol)
            if price is not None:
                result[symbol] = price
            else:
                stale.append(symbol)

        if not stale:
            return result

        fetched = await self._fetch(stale)
        now = self.time_provider.monotonic()
        for symbol in stale:
            if symbol in fetched:
                self.price_cache[symbol] = (fetched[symbol], now)
                result[symbol] = fetched[symbol]
            elif symbol in self.price_cache:
                price, fetched_at = self.price_cache[symbol]
                logger.warning(
                    f"Using stale price for {symbol} (age: {now - fetched_at:.0f}s): {price}"
                )
                result[symbol] = price
            else:
                logger.error(f"No price available for {symbol}")

        return result


class GasCostConverter:
    """Re-expresses the settlement-denominated gas estimate in output units."""

    def __init__(self, feed: PriceFeed, settlement_asset: Asset):
        self.feed = feed
        self.settlement_asset = settlement_asset

    @staticmethod
    def convert(
        gas_estimate: int,
        settlement_asset: Asset,
        output_asset: Asset,
        settlement_price: Decimal,
        output_price: Decimal,
    ) -> int:
        """
        ``gas / 10**settle_dec * P(settle) / P(output) * 10**out_dec``, truncated.
        """
        if settlement_asset == output_asset:
            return gas_estimate
        value = (
            Decimal(gas_estimate)
            / (Decimal(10) ** settlement_asset.decimals)
            * settlement_price
            / output_price
            * (Decimal(10) ** output_asset.decimals)
        )
        return int(value)

    async def gas_in(
        self, gas_estimate: int, output_assets: Iterable[Asset]
    ) -> Dict[str, int]:
        """
        Gas estimate per output asset symbol for one tick.

        Symbols whose price (or the settlement price) is unavailable are
        left out so the caller can skip their pairs.
        """
        outputs = {a.symbol: a for a in output_assets}
        if all(symbol == self.settlement_asset.symbol for symbol in outputs):
            return {symbol: gas_estimate for symbol in outputs}

        prices = await self.feed.get_prices([self.settlement_asset.symbol, *outputs])
        settlement_price = prices.get(self.settlement_asset.symbol)

        converted = {}
        for symbol, asset in outputs.items():
            if asset == self.settlement_asset:
                converted[symbol] = gas_estimate
                continue
            output_price = prices.get(symbol)
            if not settlement_price or not output_price:
                continue
            converted[symbol] = self.convert(
                gas_estimate, self.settlement_asset, asset, settlement_price, output_price
            )
        return converted
