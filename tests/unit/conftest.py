"""Shared fixtures: a small A/B/C/D token universe and its pools."""

from decimal import Decimal

import eth_abi
import pytest
from web3 import Web3

from flash_arbitrage.config_loader import DetectionConfig
from flash_arbitrage.contracts import SwapEventDecoder
from flash_arbitrage.types import Fee, Pool, Token, VenueKind

Q96 = 2**96

TOKEN_A = Token(id="0x" + "0a" * 20, name="Token A", symbol="A", decimals=18)
TOKEN_B = Token(id="0x" + "0b" * 20, name="Token B", symbol="B", decimals=18)
TOKEN_C = Token(id="0x" + "0c" * 20, name="Token C", symbol="C", decimals=18)
TOKEN_D = Token(id="0x" + "0d" * 20, name="Token D", symbol="D", decimals=18)

FEE_30_BPS = (Fee(Decimal("0.3"), "FIXED_TRADING_FEE"),)


def make_pool(pool_id: str, token0: Token, token1: Token, fees=FEE_30_BPS) -> Pool:
    return Pool(
        id=pool_id,
        name=f"{token0.symbol}/{token1.symbol}",
        symbol=f"{token0.symbol}-{token1.symbol}",
        input_tokens=(token0, token1),
        fees=fees,
    )


POOL_AB = make_pool("0x" + "ab" * 20, TOKEN_A, TOKEN_B)
POOL_BC = make_pool("0x" + "bc" * 20, TOKEN_B, TOKEN_C)
POOL_AC = make_pool("0x" + "ac" * 20, TOKEN_A, TOKEN_C)
POOL_AD = make_pool("0x" + "ad" * 20, TOKEN_A, TOKEN_D)
POOL_DC = make_pool("0x" + "dc" * 20, TOKEN_D, TOKEN_C)


@pytest.fixture
def triangle_pools():
    """A-B, B-C and the A-C pool whose swaps trigger evaluation."""
    return [POOL_AB, POOL_BC, POOL_AC]


@pytest.fixture
def detection_config():
    return DetectionConfig(
        price_impact_threshold_bps=Decimal(10),
        input_scaling_factor=Decimal(10),
    )


def make_swap_log(pool_id: str, amount0: int, amount1: int, sqrt_price_x96: int) -> dict:
    """Raw Uniswap V3 Swap log as delivered by eth_subscribe."""
    sender = Web3.to_hex(eth_abi.encode(["address"], ["0x" + "11" * 20]))
    data = eth_abi.encode(
        ["int256", "int256", "uint160", "uint128", "int24"],
        [amount0, amount1, sqrt_price_x96, 10**20, 0],
    )
    return {
        "address": pool_id,
        "topics": [SwapEventDecoder(VenueKind.UNISWAP_V3).topic, sender, sender],
        "data": Web3.to_hex(data),
    }


SWAP_INFO_TYPE = "(address,address,uint24,uint256)"
INITIATE_FLASH_LOAN_TYPES = [f"({SWAP_INFO_TYPE},{SWAP_INFO_TYPE},{SWAP_INFO_TYPE},uint256)", "uint256"]


def decode_flash_loan_calldata(calldata: bytes):
    """(arbit_info, token_a_in) from initiateFlashLoan calldata."""
    return eth_abi.decode(INITIATE_FLASH_LOAN_TYPES, calldata[4:])
