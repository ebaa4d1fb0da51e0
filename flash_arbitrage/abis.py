"""
Minimal ABIs for the pools we watch and the flash-loan arbitrage contract,
plus topic and selector helpers derived from them.
"""

from typing import Any, Dict, List

from eth_utils import event_abi_to_log_topic, function_abi_to_4byte_selector
from web3 import Web3

AbiEntry = Dict[str, Any]


def _swap_info(name: str) -> AbiEntry:
    return {
        "name": name,
        "type": "tuple",
        "internalType": "struct UniswapV3Arbitrage.SwapInfo",
        "components": [
            {"name": "tokenIn", "type": "address"},
            {"name": "tokenOut", "type": "address"},
            {"name": "poolFee", "type": "uint24"},
            {"name": "amountOutMinimum", "type": "uint256"},
        ],
    }


_UNISWAP_V3_SWAP_INPUTS = [
    {"indexed": True, "name": "sender", "type": "address"},
    {"indexed": True, "name": "recipient", "type": "address"},
    {"indexed": False, "name": "amount0", "type": "int256"},
    {"indexed": False, "name": "amount1", "type": "int256"},
    {"indexed": False, "name": "sqrtPriceX96", "type": "uint160"},
    {"indexed": False, "name": "liquidity", "type": "uint128"},
    {"indexed": False, "name": "tick", "type": "int24"},
]

# Uniswap V3 pool (minimal)
UNISWAP_V3_POOL_ABI = [
    {
        "anonymous": False,
        "inputs": _UNISWAP_V3_SWAP_INPUTS,
        "name": "Swap",
        "type": "event",
    },
]

# PancakeSwap V3 pool (minimal); Swap also reports protocol fees
PANCAKESWAP_V3_POOL_ABI = [
    {
        "anonymous": False,
        "inputs": _UNISWAP_V3_SWAP_INPUTS
        + [
            {"indexed": False, "name": "protocolFeesToken0", "type": "uint128"},
            {"indexed": False, "name": "protocolFeesToken1", "type": "uint128"},
        ],
        "name": "Swap",
        "type": "event",
    },
]

# Flash-loan triangular arbitrage contract
FLASH_ARBITRAGE_ABI = [
    {
        "inputs": [
            {
                "name": "data",
                "type": "tuple",
                "internalType": "struct UniswapV3Arbitrage.ArbitInfo",
                "components": [
                    _swap_info("swap1"),
                    _swap_info("swap2"),
                    _swap_info("swap3"),
                    {"name": "extraCost", "type": "uint256"},
                ],
            },
            {"name": "tokenAIn", "type": "uint256"},
        ],
        "name": "initiateFlashLoan",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "executionId", "type": "uint32"},
            {"indexed": False, "name": "inputAmount", "type": "uint256"},
            {"indexed": False, "name": "swap1AmountOut", "type": "uint256"},
            {"indexed": False, "name": "swap2AmountOut", "type": "uint256"},
            {"indexed": False, "name": "swap3AmountOut", "type": "uint256"},
            {"indexed": False, "name": "profit", "type": "uint256"},
        ],
        "name": "ArbitrageConcluded",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "executionId", "type": "uint32"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "FlashLoanSuccess",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "executionId", "type": "uint32"},
            {"indexed": False, "name": "message", "type": "string"},
        ],
        "name": "FlashloanError",
        "type": "event",
    },
]


def find_abi_entry(abi: List[AbiEntry], name: str, entry_type: str = "function") -> AbiEntry:
    for entry in abi:
        if entry.get("name") == name and entry.get("type") == entry_type:
            return entry
    raise KeyError(f"{entry_type} {name} not found in ABI")


def event_topic(entry: AbiEntry) -> str:
    """0x-prefixed keccak of the event signature (topic0)."""
    return Web3.to_hex(event_abi_to_log_topic(entry))


def function_selector(entry: AbiEntry) -> bytes:
    return bytes(function_abi_to_4byte_selector(entry))
