"""
Routed (aggregator) venue adapter.

Talks to a Jupiter-style HTTP aggregator: ``GET /quote`` returns the output
amount for a requested input, ``POST /swap`` executes a previously obtained
quote. The returned amounts are trusted as current and never re-derived.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from flash_arbitrage.exceptions import CalculationError, NetworkError, SlippageExceeded

logger = logging.getLogger(__name__)


class HttpRouteProvider:
    """
    Async client for an aggregator quote/swap API.

    Args:
        base_url: API root, e.g. "https://quote-api.jup.ag/v6"
        timeout: Bounded timeout in seconds for each request
        only_direct_routes: Ask for single-hop routes (faster price checks)
        user: Public key of the wallet the aggregator swaps for
        session: Optional shared aiohttp session (created lazily otherwise)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        only_direct_routes: bool = True,
        user: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.only_direct_routes = only_direct_routes
        self.user = user
        self._session = session
        self._owns_session = session is None

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

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        session = await self._get_session()
        try:
            async with session.request(method, url, **kwargs) as response:
                if response.status != 200:
                    text = await response.text()
                    raise NetworkError(
                        f"Aggregator returned HTTP {response.status}: {text[:200]}",
                        endpoint=url,
                        status_code=response.status,
                    )
                return await response.json()
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Aggregator request timed out: {url}", endpoint=url) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Aggregator request failed: {e}", endpoint=url) from e

    @staticmethod
    def _out_amount(payload: Dict[str, Any], endpoint: str) -> int:
        try:
            return int(payload["outAmount"])
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError(
                f"Aggregator response has no usable outAmount: {payload!r}"[:300],
                endpoint=endpoint,
            ) from e

    async def get_quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Request a quote.

        Returns:
            Tuple of (out_amount, raw quote payload)
        """
        if amount <= 0:
            raise CalculationError(f"Cannot quote a non-positive amount: {amount}")

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "onlyDirectRoutes": "true" if self.only_direct_routes else "false",
        }
        payload = await self._request("GET", "/quote", params=params)
        out_amount = self._out_amount(payload, f"{self.base_url}/quote")
        logger.debug(f"Quote {amount} {input_mint} -> {out_amount} {output_mint}")
        return out_amount, payload

    async def execute_swap(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        min_output: int,
        slippage_bps: int,
    ) -> int:
        """Quote then execute; returns the realized output amount."""
        _, quote = await self.get_quote(input_mint, output_mint, amount, slippage_bps)
        body = {
            "quoteResponse": quote,
            "userPublicKey": self.user,
            "minOutAmount": str(min_output),
        }
        payload = await self._request("POST", "/swap", json=body)
        realized = self._out_amount(payload, f"{self.base_url}/swap")
        if realized < min_output:
            raise SlippageExceeded(
                f"Routed swap returned {realized} < min {min_output}",
                venue=self.base_url,
                min_output=min_output,
                actual=realized,
            )
        return realized
