"""
Core data types for pool discovery, swap detection and arbitrage planning.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .exceptions import InvalidPlanError

TRADING_FEE_TYPE = "FIXED_TRADING_FEE"

# Fee percentage (0.3 == 0.3%) to uint24 fee tier (3000)
FEE_TIER_SCALE = Decimal(10000)


class VenueKind(Enum):
    """Supported concentrated-liquidity exchange variants."""

    UNISWAP_V3 = "uniswap_v3"
    PANCAKESWAP_V3 = "pancakeswap_v3"


@dataclass(frozen=True)
class Token:
    """
    ERC20 token as indexed by the pool subgraph.

    Attributes:
        id: Token contract address
        name: Token name
        symbol: Token symbol
        decimals: Decimal precision used to normalize raw amounts
    """

    id: str
    name: str
    symbol: str
    decimals: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Token":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            symbol=str(data["symbol"]),
            decimals=int(data["decimals"]),
        )


@dataclass(frozen=True)
class Fee:
    """Pool fee entry; fee_percentage is a percent (0.3 means 0.3%)."""

    fee_percentage: Decimal
    fee_type: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fee":
        return cls(
            fee_percentage=Decimal(str(data["feePercentage"])),
            fee_type=str(data.get("feeType", "")),
        )


@dataclass(frozen=True)
class Pool:
    """
    Liquidity pool with its ordered input tokens (token0 first) and fees.
    """

    id: str
    name: str
    symbol: str
    input_tokens: Tuple[Token, ...]
    fees: Tuple[Fee, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pool":
        return cls(
            id=str(data["id"]).lower(),
            name=str(data.get("name", "")),
            symbol=str(data.get("symbol", "")),
            input_tokens=tuple(Token.from_dict(t) for t in data.get("inputTokens", [])),
            fees=tuple(Fee.from_dict(f) for f in data.get("fees") or []),
        )

    @property
    def token0(self) -> Token:
        return self.input_tokens[0]

    @property
    def token1(self) -> Token:
        return self.input_tokens[1]

    @property
    def trading_fee_percentage(self) -> Decimal:
        """Swap fee charged by the pool, in percent."""
        for fee in self.fees:
            if fee.fee_type == TRADING_FEE_TYPE:
                return fee.fee_percentage
        if not self.fees:
            return Decimal(0)
        return max(fee.fee_percentage for fee in self.fees)

    @property
    def fee_tier(self) -> int:
        """Fee tier in hundredths of a basis point, as router contracts expect."""
        return int(self.trading_fee_percentage * FEE_TIER_SCALE)

    def has_token(self, symbol: str) -> bool:
        return any(token.symbol == symbol for token in self.input_tokens)

    def token_by_symbol(self, symbol: str) -> Optional[Token]:
        for token in self.input_tokens:
            if token.symbol == symbol:
                return token
        return None

    def counterparts(self, symbol: str) -> Tuple[Token, ...]:
        """Tokens of this pool other than the given one."""
        return tuple(t for t in self.input_tokens if t.symbol != symbol)


@dataclass(frozen=True)
class SwapEvent:
    """
    A swap observed on a pool.

    Amounts are signed raw deltas from the pool's point of view: a positive
    amount is what the pool received (the swapper's input).
    sqrt_price_x96 is the pool price after the swap.
    """

    pool_id: str
    amount0: int
    amount1: int
    sqrt_price_x96: int
    liquidity: int = 0
    tick: int = 0
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None


@dataclass(frozen=True)
class SwapLeg:
    """One swap of an arbitrage cycle."""

    token_in: Token
    token_out: Token
    fee_tier: int
    minimum_amount_out: int = 0

    def to_contract_tuple(self) -> Tuple[str, str, int, int]:
        return (
            self.token_in.id,
            self.token_out.id,
            self.fee_tier,
            self.minimum_amount_out,
        )


@dataclass(frozen=True)
class ArbitragePlan:
    """
    Three swap legs forming the cycle A -> B -> C -> A.

    Raises:
        InvalidPlanError: If the legs do not form a closed cycle
    """

    leg1: SwapLeg
    leg2: SwapLeg
    leg3: SwapLeg
    estimated_gas_cost: Decimal = Decimal(0)

    def __post_init__(self):
        if self.leg1.token_out.id != self.leg2.token_in.id:
            raise InvalidPlanError("leg1 output does not feed leg2")
        if self.leg2.token_out.id != self.leg3.token_in.id:
            raise InvalidPlanError("leg2 output does not feed leg3")
        if self.leg3.token_out.id != self.leg1.token_in.id:
            raise InvalidPlanError("leg3 does not return to the starting token")

    @property
    def legs(self) -> Tuple[SwapLeg, SwapLeg, SwapLeg]:
        return (self.leg1, self.leg2, self.leg3)

    @property
    def start_token(self) -> Token:
        return self.leg1.token_in

    def describe(self) -> str:
        return " -> ".join(
            [leg.token_in.symbol for leg in self.legs] + [self.start_token.symbol]
        )


@dataclass
class Opportunity:
    """
    Arbitrage opportunity derived from a swap.

    Attributes:
        token_a_in: Starting amount of token A in raw units, already divided
            by the input scaling factor
        original_swap: Swap that triggered the evaluation
        last_pool_sqrt_price_x96: Pool price state before the swap
        price_impact_bps: Price impact of the original swap
        plan: Legs to execute
        expected_profit: Expected profit in raw token A units; None until evaluated
        scaling_factor: Factor applied to the raw swap input
    """

    token_a_in: Decimal
    original_swap: SwapEvent
    last_pool_sqrt_price_x96: Decimal
    price_impact_bps: Optional[Decimal] = None
    plan: Optional[ArbitragePlan] = None
    expected_profit: Optional[Decimal] = None
    scaling_factor: Decimal = field(default=Decimal(1))

    @property
    def raw_swap_input(self) -> Decimal:
        """Input amount of the original swap, with the scaling reversed."""
        return self.token_a_in * self.scaling_factor

    @property
    def is_evaluated(self) -> bool:
        return self.expected_profit is not None


@dataclass(frozen=True)
class ArbitrageConcluded:
    """Emitted by the arbitrage contract after all three swaps."""

    execution_id: int
    input_amount: int
    swap1_amount_out: int
    swap2_amount_out: int
    swap3_amount_out: int
    profit: int
    transaction_hash: Optional[str] = None


@dataclass(frozen=True)
class FlashLoanSuccess:
    """Emitted by the arbitrage contract when the flash loan is repaid."""

    execution_id: int
    amount: int
    transaction_hash: Optional[str] = None


@dataclass(frozen=True)
class FlashLoanError:
    """Emitted by the arbitrage contract when the flash loan callback fails."""

    execution_id: int
    message: str
    transaction_hash: Optional[str] = None
