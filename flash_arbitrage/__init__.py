"""
Flash-loan triangular arbitrage bot.

Watches concentrated-liquidity DEX pools for swaps with a significant price
impact, looks for a profitable A -> B -> C -> A cycle through the moved pool
and triggers an on-chain flash-loan arbitrage contract.
"""

PROJECT_NAME = "flash-arbitrage"
VERSION = "0.1.0"

# Export main components for easier imports
from flash_arbitrage.config_loader import BotConfig, load_bot_config
from flash_arbitrage.controller import Controller
from flash_arbitrage.detection import OpportunityDetector
from flash_arbitrage.discovery import DexPoolSubgraph
from flash_arbitrage.execution import ExecutionPipeline, ExecutionResult, NonceAllocator
from flash_arbitrage.streaming import ConnectionManager, LogSubscription
from flash_arbitrage.types import ArbitragePlan, Opportunity, Pool, SwapEvent, Token
from flash_arbitrage.venues import DexVenue, VenueState

__all__ = [
    "PROJECT_NAME",
    "VERSION",
    "BotConfig",
    "load_bot_config",
    "Controller",
    "OpportunityDetector",
    "DexPoolSubgraph",
    "ExecutionPipeline",
    "ExecutionResult",
    "NonceAllocator",
    "ConnectionManager",
    "LogSubscription",
    "ArbitragePlan",
    "Opportunity",
    "Pool",
    "SwapEvent",
    "Token",
    "DexVenue",
    "VenueState",
]
