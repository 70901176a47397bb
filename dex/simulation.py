"""
Price-check simulation entry point and its wire format.

The program's read-only price check answers with a 16-byte buffer: bytes
[0, 8) hold venue A's price and bytes [8, 16) venue B's, both unsigned
64-bit little-endian integers scaled by PRICE_PRECISION.

Instructions share one layout::

    discriminator (1 byte) | input address | output address | amount (u64 LE)

``0x00`` is the price check, ``0x01`` the atomic execution.
"""

import struct
from typing import Tuple

from web3 import Web3

from flash_arbitrage.exceptions import InvalidTokenAccount, SimulationError
from flash_arbitrage.fixed_point import U64_MAX

from .types import Asset
from .venues import Venue

PRICE_CHECK_DISCRIMINATOR = 0x00
EXECUTE_DISCRIMINATOR = 0x01

PRICE_BUFFER = struct.Struct("<QQ")
AMOUNT = struct.Struct("<Q")


def _address_bytes(asset: Asset) -> bytes:
    try:
        return Web3.to_bytes(hexstr=asset.address)
    except (TypeError, ValueError) as e:
        raise InvalidTokenAccount(
            f"Malformed address for {asset}: {asset.address!r}", asset=asset.symbol
        ) from e


def encode_instruction(
    discriminator: int, input_asset: Asset, output_asset: Asset, amount: int
) -> bytes:
    if not 0 <= amount <= U64_MAX:
        raise SimulationError(f"Amount {amount} does not fit in u64")
    return (
        bytes([discriminator])
        + _address_bytes(input_asset)
        + _address_bytes(output_asset)
        + AMOUNT.pack(amount)
    )


def encode_price_check(input_asset: Asset, output_asset: Asset, amount: int) -> bytes:
    return encode_instruction(PRICE_CHECK_DISCRIMINATOR, input_asset, output_asset, amount)


def encode_execute(input_asset: Asset, output_asset: Asset, loan_amount: int) -> bytes:
    return encode_instruction(EXECUTE_DISCRIMINATOR, input_asset, output_asset, loan_amount)


def encode_price_buffer(price_a: int, price_b: int) -> bytes:
    try:
        return PRICE_BUFFER.pack(price_a, price_b)
    except struct.error as e:
        raise SimulationError(f"Prices do not fit in u64: {price_a}, {price_b}") from e


def decode_price_buffer(data: bytes) -> Tuple[int, int]:
    """
    Read (price_a, price_b) from a price-check return buffer.

    Trailing bytes are ignored.

    Raises:
        SimulationError: If fewer than 16 bytes were returned
    """
    if data is None or len(data) < PRICE_BUFFER.size:
        size = 0 if data is None else len(data)
        raise SimulationError(
            f"Price-check returned {size} bytes, expected {PRICE_BUFFER.size}"
        )
    return PRICE_BUFFER.unpack_from(bytes(data), 0)


def decode_profit(data: bytes) -> int:
    """Realized profit returned by a simulated execution (u64 LE)."""
    if data is None or len(data) < AMOUNT.size:
        raise SimulationError("Execution simulation returned no profit word")
    return AMOUNT.unpack_from(bytes(data), 0)[0]


class PriceCheckProgram:
    """
    In-process implementation of the read-only price check.

    Quotes both venues for the same amount and answers with the encoded
    price buffer, exactly as the deployed program would. Used in paper mode
    with the simulation quote source.
    """

    def __init__(self, venue_a: Venue, venue_b: Venue):
        self.venue_a = venue_a
        self.venue_b = venue_b

    async def simulate_price_check(
        self, input_asset: Asset, output_asset: Asset, amount: int
    ) -> bytes:
        quote_a = await self.venue_a.quote(input_asset, output_asset, amount)
        quote_b = await self.venue_b.quote(input_asset, output_asset, amount)
        return encode_price_buffer(quote_a.price, quote_b.price)
