"""
Fixed-point price math shared by every venue, fee and evaluation path.

All amounts are unsigned integers in an asset's smallest denomination and
must fit in 64 bits, the width used on the wire by the price-check
simulation. Prices are ``output * PRICE_PRECISION // input`` so that quotes
from different venues compare exactly as integers.

Conversion policy:
- Every operation here is checked: negatives, results over ``U64_MAX`` and
  division by zero raise ``CalculationError``.
- Division truncates toward zero (operands are never negative).
- ``compute_price`` is the only place prices are produced.
"""

from flash_arbitrage.exceptions import CalculationError

PRICE_PRECISION = 1_000_000
BPS_DENOMINATOR = 10_000

U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1


def _check(value: int, bound: int, op: str) -> int:
    if value < 0:
        raise CalculationError(f"{op} underflow: {value}", {"op": op})
    if value > bound:
        raise CalculationError(f"{op} overflow: {value}", {"op": op})
    return value


def _require_int(*values: int) -> None:
    for v in values:
        # bool is an int subclass but never a valid amount
        if not isinstance(v, int) or isinstance(v, bool):
            raise CalculationError(f"Expected integer amount, got {v!r}")
        if v < 0:
            raise CalculationError(f"Negative amount: {v}")


def checked_add(a: int, b: int, bound: int = U64_MAX) -> int:
    _require_int(a, b)
    return _check(a + b, bound, "add")


def checked_sub(a: int, b: int, bound: int = U64_MAX) -> int:
    _require_int(a, b)
    return _check(a - b, bound, "sub")


def checked_mul(a: int, b: int, bound: int = U64_MAX) -> int:
    _require_int(a, b)
    return _check(a * b, bound, "mul")


def checked_div(a: int, b: int, bound: int = U64_MAX) -> int:
    _require_int(a, b)
    if b == 0:
        raise CalculationError("Division by zero", {"op": "div", "numerator": a})
    return _check(a // b, bound, "div")


def mul_div(a: int, b: int, denominator: int) -> int:
    """
    Compute ``a * b // denominator`` with a 128-bit intermediate.

    The product may exceed 64 bits as long as the quotient fits.
    """
    product = checked_mul(a, b, bound=U128_MAX)
    return checked_div(product, denominator)


def compute_price(output_amount: int, input_amount: int) -> int:
    """
    Price of one input unit in output units, scaled by ``PRICE_PRECISION``.

    Raises:
        CalculationError: On zero ``input_amount``, negative inputs, or a
            result that does not fit in 64 bits.
    """
    _require_int(output_amount, input_amount)
    if input_amount == 0:
        raise CalculationError(
            "Cannot price a zero input amount", {"output_amount": output_amount}
        )
    scaled = checked_mul(output_amount, PRICE_PRECISION)
    return checked_div(scaled, input_amount)


def apply_bps(amount: int, bps: int) -> int:
    """Return ``amount * bps / 10000`` truncated (e.g. a fee of ``bps``)."""
    return checked_div(checked_mul(amount, bps), BPS_DENOMINATOR)


def min_output_for_slippage(quoted_output: int, max_slippage_bps: int) -> int:
    """Lowest acceptable realized output for a hop quoted at ``quoted_output``."""
    if max_slippage_bps > BPS_DENOMINATOR:
        raise CalculationError(f"Slippage bound over 100%: {max_slippage_bps} bps")
    return apply_bps(quoted_output, BPS_DENOMINATOR - max_slippage_bps)


def pct_to_bps(pct: float) -> int:
    """Convert a configured percentage to integer basis points. 0.3% -> 30 bps"""
    return int(round(pct * 100))
