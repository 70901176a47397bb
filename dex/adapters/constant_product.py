"""
Constant-product (x*y=k) pool adapter.

Implements the swap-output math with checked integer arithmetic and the
on-chain reserve read for V2-style pair contracts. The fee is taken from the
output side: ``net = gross * (10000 - fee_bps) // 10000``.
"""

import asyncio
from dataclasses import dataclass
from typing import Tuple

from web3 import Web3
from web3.exceptions import Web3Exception

from flash_arbitrage.exceptions import CalculationError, InvalidTokenAccount, NetworkError
from flash_arbitrage.fixed_point import (
    BPS_DENOMINATOR,
    U128_MAX,
    checked_add,
    checked_div,
    checked_mul,
    checked_sub,
)

UNISWAP_V2_PAIR_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "getReserves",
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class SwapResult:
    """
    Outcome of pushing ``amount_in`` through a pool.

    Attributes:
        gross_out: Output before the venue fee
        net_out: Output after the venue fee (what the trader receives)
        new_reserve_in: Input reserve after the trade
        new_reserve_out: k // new_reserve_in, the output reserve implied by the
            invariant before the fee is applied
    """

    gross_out: int
    net_out: int
    new_reserve_in: int
    new_reserve_out: int


def swap_out(
    amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int
) -> SwapResult:
    """
    Calculate output amount for a constant-product swap.

    Formula:
        k = reserve_in * reserve_out
        new_reserve_in = reserve_in + amount_in
        new_reserve_out = k // new_reserve_in
        gross_out = reserve_out - new_reserve_out
        net_out = gross_out * (10000 - fee_bps) // 10000

    Raises:
        CalculationError: On zero amount or reserves, or any overflow
    """
    if amount_in <= 0:
        raise CalculationError(f"amount_in must be positive: {amount_in}")
    if reserve_in <= 0 or reserve_out <= 0:
        raise CalculationError(
            f"Reserves must be positive: in={reserve_in}, out={reserve_out}"
        )
    if not 0 <= fee_bps < BPS_DENOMINATOR:
        raise CalculationError(f"Fee must be in [0, 10000) bps: {fee_bps}")

    k = checked_mul(reserve_in, reserve_out, bound=U128_MAX)
    new_reserve_in = checked_add(reserve_in, amount_in)
    new_reserve_out = checked_div(k, new_reserve_in)
    gross_out = checked_sub(reserve_out, new_reserve_out)
    net_out = checked_div(
        checked_mul(gross_out, BPS_DENOMINATOR - fee_bps), BPS_DENOMINATOR
    )

    return SwapResult(
        gross_out=gross_out,
        net_out=net_out,
        new_reserve_in=new_reserve_in,
        new_reserve_out=new_reserve_out,
    )


async def fetch_reserves_async(
    web3: Web3, pair_addr: str, token_in_addr: str, timeout: float = 10.0
) -> Tuple[int, int]:
    """
    Read ``(reserve_in, reserve_out)`` from a V2-style pair contract.

    Runs the synchronous RPC calls in a thread pool to avoid blocking the
    event loop.

    Raises:
        InvalidTokenAccount: If the pair address is not a valid address
        NetworkError: If the RPC calls fail or time out
    """
    if not Web3.is_address(pair_addr):
        raise InvalidTokenAccount(f"Invalid pair address: {pair_addr}")

    pair = web3.eth.contract(
        address=Web3.to_checksum_address(pair_addr), abi=UNISWAP_V2_PAIR_ABI
    )
    loop = asyncio.get_running_loop()

    try:
        token0, reserves = await asyncio.wait_for(
            asyncio.gather(
                loop.run_in_executor(None, pair.functions.token0().call),
                loop.run_in_executor(None, pair.functions.getReserves().call),
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise NetworkError(
            f"Timed out reading reserves of {pair_addr}", endpoint=pair_addr
        ) from e
    except (Web3Exception, OSError) as e:
        raise NetworkError(
            f"Failed to fetch pool {pair_addr}: {e}", endpoint=pair_addr
        ) from e

    r0, r1 = int(reserves[0]), int(reserves[1])
    if Web3.to_checksum_address(token0) == Web3.to_checksum_address(token_in_addr):
        return r0, r1
    return r1, r0
