"""
Venue adapters for the two supported liquidity kinds.
"""

from .constant_product import SwapResult, fetch_reserves_async, swap_out
from .routed import HttpRouteProvider

__all__ = ["SwapResult", "swap_out", "fetch_reserves_async", "HttpRouteProvider"]
