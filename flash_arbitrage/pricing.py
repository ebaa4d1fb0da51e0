"""
Fixed-point price math for concentrated-liquidity pools.

All computations use Decimal under a 60 digit context. Prices derived from a
square-root price state are expressed as token1 per token0; "raw" prices
relate raw on-chain amounts, "normalized" prices relate human amounts.
"""

from decimal import Context, Decimal, localcontext
from typing import Union

from .exceptions import InvalidPriceStateError, PriceImpactError
from .types import Pool
from .utils import decimal_to_basis_points

PRICE_CONTEXT = Context(prec=60)

Q96 = Decimal(2**96)
PERCENT = Decimal(100)

Number = Union[int, Decimal]


def sqrt_price_x96_to_price(sqrt_price_x96: Number) -> Decimal:
    """Raw token1-per-token0 price encoded by a Q64.96 square-root price."""
    if sqrt_price_x96 <= 0:
        raise InvalidPriceStateError(
            f"Invalid sqrtPriceX96: {sqrt_price_x96}", price_state=int(sqrt_price_x96)
        )
    with localcontext(PRICE_CONTEXT):
        ratio = Decimal(sqrt_price_x96) / Q96
        return ratio * ratio


def normalized_price(sqrt_price_x96: Number, decimals0: int, decimals1: int) -> Decimal:
    """Human token1-per-token0 price, adjusted for both tokens' decimals."""
    with localcontext(PRICE_CONTEXT):
        return sqrt_price_x96_to_price(sqrt_price_x96) * (
            Decimal(10) ** (decimals0 - decimals1)
        )


def calculate_price_impact_bps(
    amount0: int,
    amount1: int,
    sqrt_price_x96: Number,
    decimals0: int,
    decimals1: int,
) -> Decimal:
    """
    Deviation between a swap's execution price and the pool reference price.

    The execution price is |amount1| / |amount0| and the reference price is
    the one encoded by sqrt_price_x96, both normalized by token decimals. The
    result is unsigned, so it does not depend on the swap direction.

    Raises:
        InvalidPriceStateError: If the price state is not positive
        PriceImpactError: If either swap amount is zero
    """
    if amount0 == 0 or amount1 == 0:
        raise PriceImpactError(
            f"Cannot compute price impact for amounts {amount0}/{amount1}"
        )

    with localcontext(PRICE_CONTEXT):
        reference = normalized_price(sqrt_price_x96, decimals0, decimals1)
        human0 = Decimal(abs(amount0)) / (Decimal(10) ** decimals0)
        human1 = Decimal(abs(amount1)) / (Decimal(10) ** decimals1)
        execution = human1 / human0
        return decimal_to_basis_points(abs(execution - reference) / reference)


def is_price_impact_significant(impact_bps: Decimal, threshold_bps: Number) -> bool:
    return impact_bps > Decimal(threshold_bps)


def apply_fee(amount: Decimal, fee_percentage: Decimal) -> Decimal:
    """Reduce an output amount by a fee given in percent."""
    with localcontext(PRICE_CONTEXT):
        return amount * (1 - fee_percentage / PERCENT)


def quote_leg(
    amount_in: Decimal, pool: Pool, token_in_symbol: str, sqrt_price_x96: Number
) -> Decimal:
    """
    Estimate the output of a swap at a constant reference price.

    Uses the given pool price state without re-quoting on chain, then takes
    the pool's trading fee off the output. Amounts are raw token units.
    """
    price = sqrt_price_x96_to_price(sqrt_price_x96)
    with localcontext(PRICE_CONTEXT):
        if pool.token0.symbol == token_in_symbol:
            amount_out = amount_in * price
        else:
            amount_out = amount_in / price
    return apply_fee(amount_out, pool.trading_fee_percentage)
