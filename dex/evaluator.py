"""
Profitability evaluator.

Single source of truth for the go/no-go decision. Both the monitor (on
detection) and the orchestrator (on the execution path) call ``evaluate``;
it is a pure function of its arguments and safe to call concurrently.
"""

from typing import Optional

from flash_arbitrage.fixed_point import PRICE_PRECISION, checked_sub, mul_div

from .fees import FeeModel
from .types import ArbitrageOpportunity, Direction, PriceQuote, TokenPair


def compute_spread(quote_a: PriceQuote, quote_b: PriceQuote, amount: int) -> int:
    """
    Value of the price gap over ``amount``, in raw output units.

    ``|price_a - price_b| * amount / PRICE_PRECISION``; overflow raises
    CalculationError because this is trade math.
    """
    price_a, price_b = quote_a.price, quote_b.price
    diff = checked_sub(max(price_a, price_b), min(price_a, price_b))
    return mul_div(diff, amount, PRICE_PRECISION)


def choose_direction(price_a: int, price_b: int) -> Direction:
    """
    Order the swaps so the second one executes against the higher-priced venue.

    Equal prices fall through to SELL_ON_A_THEN_B; a zero spread is never
    profitable so the choice is never acted on.
    """
    if price_a > price_b:
        return Direction.SELL_ON_B_THEN_A
    return Direction.SELL_ON_A_THEN_B


def evaluate(
    quote_a: PriceQuote,
    quote_b: PriceQuote,
    amount: int,
    fee_model: FeeModel,
    needs_conversion: bool = False,
    pair: Optional[TokenPair] = None,
) -> Optional[ArbitrageOpportunity]:
    """
    Decide whether the gap between two venues pays for a flash-loan round trip.

    Args:
        quote_a: Venue A quote for input -> output
        quote_b: Venue B quote for input -> output
        amount: Notional the spread is measured over
        fee_model: Fee rates and gas estimate
        needs_conversion: Whether the loan asset must be converted in and out
        pair: Pair being evaluated (carried on the opportunity)

    Returns:
        An opportunity iff spread > total cost (strictly), else None

    Raises:
        CalculationError: If price or spread arithmetic overflows
    """
    spread = compute_spread(quote_a, quote_b, amount)
    total_cost = fee_model.total_cost(amount, needs_conversion)

    if spread <= total_cost:
        return None

    return ArbitrageOpportunity(
        pair=pair,
        direction=choose_direction(quote_a.price, quote_b.price),
        quote_a=quote_a,
        quote_b=quote_b,
        spread=spread,
        total_cost=total_cost,
    )
