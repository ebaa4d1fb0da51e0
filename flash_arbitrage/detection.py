"""
Opportunity detection for swap-driven triangular arbitrage.

A large swap A -> C moves its pool's price. If the price impact is
significant, the detector looks for a pivot token B such that
A -> B -> C (through other pools) and then C -> A (back through the moved
pool) returns more A than it started with, net of fees and gas.
"""

from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Callable, List, Optional, Tuple

from .config_loader import DetectionConfig
from .exceptions import InvalidPlanError, InvalidPriceStateError, PriceImpactError
from .pricing import (
    PRICE_CONTEXT,
    calculate_price_impact_bps,
    is_price_impact_significant,
    quote_leg,
)
from .token_index import TokenIndex
from .types import ArbitragePlan, Opportunity, Pool, SwapEvent, SwapLeg, Token
from .utils import get_logger

logger = get_logger(__name__)

# Returns the last known sqrtPriceX96 of a pool, 0 when unknown
PriceStateLookup = Callable[[str], int]


@dataclass(frozen=True)
class LegQuote:
    """Estimated result of one leg through a specific pool."""

    pool: Pool
    token_in: Token
    token_out: Token
    amount_in: Decimal
    amount_out: Decimal

    def to_swap_leg(self) -> SwapLeg:
        # Slippage protection is enforced by the executing contract
        return SwapLeg(
            token_in=self.token_in,
            token_out=self.token_out,
            fee_tier=self.pool.fee_tier,
            minimum_amount_out=0,
        )


@dataclass(frozen=True)
class CycleEstimate:
    """Estimated A -> B -> C -> A cycle for one pivot token."""

    token_b: Token
    legs: Tuple[LegQuote, LegQuote, LegQuote]
    gas_cost: Decimal
    expected_profit: Decimal

    @property
    def final_amount(self) -> Decimal:
        return self.legs[2].amount_out


class OpportunityDetector:
    """
    Turns swap events into profitable three-leg arbitrage plans.

    The detector is pure computation: it reads the frozen token index and the
    last known pool prices and never performs I/O.
    """

    def __init__(
        self,
        token_index: TokenIndex,
        price_state_of: PriceStateLookup,
        config: DetectionConfig,
        venue_name: str = "",
    ):
        """
        Args:
            token_index: Frozen symbol -> pools index of the venue
            price_state_of: Lookup of the last known sqrtPriceX96 per pool id
            config: Detection thresholds and gas cost estimates
            venue_name: Used as log prefix
        """
        self.token_index = token_index
        self.price_state_of = price_state_of
        self.config = config
        self.venue_name = venue_name

    def evaluate(
        self, swap: SwapEvent, last_sqrt_price_x96: int, pool: Pool
    ) -> Optional[Opportunity]:
        """
        Evaluate a swap and return a profitable opportunity, if any.

        Args:
            swap: Swap observed on `pool`
            last_sqrt_price_x96: Pool price state before the swap
            pool: Pool the swap happened in; its input tokens are token0/token1

        Returns:
            Opportunity with a plan and a positive expected profit, or None
        """
        if last_sqrt_price_x96 <= 0:
            logger.warning(
                f"[{self.venue_name}] Invalid lastPoolSqrtPriceX96: {last_sqrt_price_x96}"
            )
            return None

        token0, token1 = pool.token0, pool.token1
        if swap.amount0 > 0:
            token_a, token_c = token0, token1
            swap_in, swap_out = swap.amount0, swap.amount1
        else:
            token_a, token_c = token1, token0
            swap_in, swap_out = swap.amount1, swap.amount0

        swap_name = f"{token_a.symbol} -> {token_c.symbol}"
        logger.debug(
            f"[{self.venue_name}] Processing swap: {swap_name}, "
            f"amountA={swap_in}, amountC={swap_out}"
        )

        opportunity = Opportunity(
            token_a_in=Decimal(swap_in) / self.config.input_scaling_factor,
            original_swap=swap,
            last_pool_sqrt_price_x96=Decimal(last_sqrt_price_x96),
            scaling_factor=self.config.input_scaling_factor,
        )

        try:
            opportunity.price_impact_bps = calculate_price_impact_bps(
                swap.amount0,
                swap.amount1,
                last_sqrt_price_x96,
                token0.decimals,
                token1.decimals,
            )
        except (PriceImpactError, InvalidPriceStateError) as e:
            logger.warning(f"[{self.venue_name}] Error calculating price impact: {e}")
            return None

        logger.debug(
            f"[{self.venue_name}] Calculated price impact of "
            f"{opportunity.price_impact_bps:.2f} (bps) for swap: {swap_name}"
        )

        if not is_price_impact_significant(
            opportunity.price_impact_bps, self.config.price_impact_threshold_bps
        ):
            return None

        logger.info(
            f"[{self.venue_name}] Significant price impact "
            f"({opportunity.price_impact_bps:.2f} bps) detected for swap: {swap_name}"
        )

        candidates = self.find_intermediary_tokens(token_a, token_c)
        if not candidates:
            logger.info(
                f"[{self.venue_name}] No candidates for token B found for {swap_name}"
            )
            return None

        logger.info(
            f"[{self.venue_name}] Found {len(candidates)} candidate token Bs "
            f"for {swap_name}"
        )

        best = self.pick_token_b(
            token_a, token_c, candidates, opportunity.token_a_in, pool, swap
        )
        if best is None or best.expected_profit <= 0:
            logger.info(
                f"[{self.venue_name}] No profitable arbitrage opportunities found "
                f"for swap: {swap_name}"
            )
            return None

        try:
            opportunity.plan = ArbitragePlan(
                leg1=best.legs[0].to_swap_leg(),
                leg2=best.legs[1].to_swap_leg(),
                leg3=best.legs[2].to_swap_leg(),
                estimated_gas_cost=best.gas_cost,
            )
        except InvalidPlanError as e:
            logger.warning(f"[{self.venue_name}] Invalid opportunity: {e}")
            return None

        opportunity.expected_profit = best.expected_profit
        logger.info(
            f"[{self.venue_name}] Opportunity {opportunity.plan.describe()}: "
            f"tokenAIn={opportunity.token_a_in:.0f}, "
            f"expectedProfit={best.expected_profit:.0f}, "
            f"gas={best.gas_cost:.0f}, "
            f"impact={opportunity.price_impact_bps:.2f} bps"
        )
        return opportunity

    def find_intermediary_tokens(self, token_a: Token, token_c: Token) -> List[Token]:
        """Tokens sharing a pool with both A and C, excluding A and C."""
        return self.token_index.intermediary_tokens(token_a.symbol, token_c.symbol)

    def gas_cost_in(self, token: Token) -> Decimal:
        """Estimated execution cost in raw units of `token`."""
        with localcontext(PRICE_CONTEXT):
            return self.config.gas_cost_for(token.symbol) * (
                Decimal(10) ** token.decimals
            )

    def best_leg(
        self, token_in: Token, token_out: Token, amount_in: Decimal
    ) -> Optional[LegQuote]:
        """
        Best-output pool for token_in -> token_out among priced pools.

        Ties keep the first pool in index order.
        """
        best: Optional[LegQuote] = None
        for pool in self.token_index.pools_between(token_in.symbol, token_out.symbol):
            price_state = self.price_state_of(pool.id)
            if price_state <= 0:
                continue
            amount_out = quote_leg(amount_in, pool, token_in.symbol, price_state)
            if best is None or amount_out > best.amount_out:
                best = LegQuote(pool, token_in, token_out, amount_in, amount_out)
        return best

    def estimate_cycle(
        self,
        token_a: Token,
        token_b: Token,
        token_c: Token,
        amount_in: Decimal,
        trigger_pool: Pool,
        swap: SwapEvent,
    ) -> Optional[CycleEstimate]:
        """
        Estimate A -> B -> C -> A for one pivot token.

        The closing leg C -> A goes through the pool that was just moved, at
        its post-swap price.
        """
        leg1 = self.best_leg(token_a, token_b, amount_in)
        if leg1 is None:
            return None
        leg2 = self.best_leg(token_b, token_c, leg1.amount_out)
        if leg2 is None:
            return None
        if swap.sqrt_price_x96 <= 0:
            return None
        leg3 = LegQuote(
            pool=trigger_pool,
            token_in=token_c,
            token_out=token_a,
            amount_in=leg2.amount_out,
            amount_out=quote_leg(
                leg2.amount_out, trigger_pool, token_c.symbol, swap.sqrt_price_x96
            ),
        )

        gas_cost = self.gas_cost_in(token_a)
        with localcontext(PRICE_CONTEXT):
            expected_profit = leg3.amount_out - amount_in - gas_cost
        return CycleEstimate(
            token_b=token_b,
            legs=(leg1, leg2, leg3),
            gas_cost=gas_cost,
            expected_profit=expected_profit,
        )

    def pick_token_b(
        self,
        token_a: Token,
        token_c: Token,
        candidates: List[Token],
        amount_in: Decimal,
        trigger_pool: Pool,
        swap: SwapEvent,
    ) -> Optional[CycleEstimate]:
        """
        Pick the pivot token with the highest expected profit.

        Ties keep the first candidate in index order. Returns None when no
        candidate can be priced.
        """
        best: Optional[CycleEstimate] = None
        for token_b in candidates:
            estimate = self.estimate_cycle(
                token_a, token_b, token_c, amount_in, trigger_pool, swap
            )
            if estimate is None:
                logger.debug(
                    f"[{self.venue_name}] Skipping token B {token_b.symbol}: "
                    f"no priced pools"
                )
                continue
            if best is None or estimate.expected_profit > best.expected_profit:
                best = estimate
        return best
