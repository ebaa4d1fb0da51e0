"""
Exception hierarchy for the flash-loan arbitrage bot.

Provides specific exception types for each failure category so callers can
tell fatal initialization errors apart from per-event errors.
"""

from typing import Any, Dict, Optional


class FlashArbitrageError(Exception):
    """Base exception for all flash arbitrage related errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(FlashArbitrageError):
    """Raised when there are configuration-related issues."""

    pass


class InvalidPriceStateError(FlashArbitrageError):
    """Raised when a pool's square-root price state is missing or non-positive."""

    def __init__(
        self,
        message: str,
        pool_id: Optional[str] = None,
        price_state: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.pool_id = pool_id
        self.price_state = price_state


class PriceImpactError(FlashArbitrageError):
    """Raised when the price impact of a swap cannot be computed."""

    pass


class InvalidPlanError(FlashArbitrageError):
    """Raised when three swap legs do not form a closed cycle."""

    pass


class DiscoveryError(FlashArbitrageError):
    """Raised when a pool discovery query fails."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code


class SubscriptionError(FlashArbitrageError):
    """Raised when the event stream cannot be (re)established."""

    def __init__(
        self,
        message: str,
        attempts: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.attempts = attempts


class ExecutionError(FlashArbitrageError):
    """Raised when nonce allocation, signing or submission fails."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        nonce: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.stage = stage
        self.nonce = nonce
