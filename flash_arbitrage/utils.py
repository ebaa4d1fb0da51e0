"""
Common utilities and helper functions for the flash arbitrage bot.

This module provides centralized helpers for logging, time-window keys used by
the pool subgraph, subgraph URL construction and basis point conversion.
"""

import logging
import time
from decimal import Decimal
from typing import Optional, Union

SECONDS_PER_HOUR = 3600


# Time utilities
def get_current_timestamp() -> float:
    """Get current Unix timestamp as float."""
    return time.time()


def get_hours_since_unix_epoch(timestamp: Optional[float] = None) -> int:
    """
    Get the hourly snapshot key used by the pool subgraph.

    The current hour is still being aggregated by the indexer, so the key
    points at the last complete hour (hours since the epoch minus one).

    Args:
        timestamp: Unix timestamp, defaults to now

    Returns:
        Hours since the Unix epoch minus one
    """
    if timestamp is None:
        timestamp = get_current_timestamp()
    return int(timestamp // SECONDS_PER_HOUR) - 1


# Subgraph utilities
def get_subgraph_url(base_url: str, subgraph_name: str, api_key: str = "") -> str:
    """
    Build a subgraph query URL for The Graph gateway.

    Args:
        base_url: Gateway base URL, e.g. https://gateway.thegraph.com/api
        subgraph_name: Subgraph id or deployment name
        api_key: Gateway API key, omitted from the URL when empty

    Returns:
        Full query URL
    """
    base = base_url.rstrip("/")
    name = subgraph_name.strip("/")
    if api_key:
        return f"{base}/{api_key}/subgraphs/id/{name}"
    return f"{base}/subgraphs/id/{name}"


# Math utilities
def decimal_to_basis_points(value: Union[Decimal, int]) -> Decimal:
    """Convert a decimal fraction to basis points (0.01 = 100 bps)."""
    return Decimal(value) * Decimal(10000)


def shorten_address(address: str, chars: int = 6) -> str:
    """Shorten a hex address for log output."""
    if not address or len(address) <= 2 * chars + 2:
        return address
    return f"{address[:chars + 2]}...{address[-chars:]}"


# Logging utilities
def get_logger(name: str, level: Union[str, int] = logging.INFO) -> logging.Logger:
    """
    Get a structured logger with consistent formatting.

    Args:
        name: Logger name (typically __name__)
        level: Logging level

    Returns:
        Configured logger with structured output
    """
    logger = logging.getLogger(name)

    # Set level if not already set
    if logger.level == logging.NOTSET:
        logger.setLevel(level)

    # Add structured formatter if no handlers exist
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
