"""
Logging configuration for the command-line entry point.

Usage:
    import logging_config
    logging_config.setup()
"""

import logging
import sys


def setup(level=logging.INFO):
    """
    Configure root logging for readable console output.

    - Uses a short timestamp format (HH:MM:SS)
    - Routes flash_arbitrage module loggers through the root handler only
    - Quiets HTTP and websocket client chatter
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s", datefmt="%H:%M:%S"
    )
    console.setFormatter(formatter)
    root.addHandler(console)

    # get_logger() handlers would print every record twice
    for name in list(logging.root.manager.loggerDict):
        if name == "flash_arbitrage" or name.startswith("flash_arbitrage."):
            logger = logging.getLogger(name)
            logger.handlers.clear()
            logger.setLevel(level)

    # Suppress noisy loggers
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("web3.providers").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logging.getLogger("__main__").setLevel(level)


def setup_minimal():
    """Only warnings and errors."""
    setup(level=logging.WARNING)


def setup_debug():
    """
    Verbose logging for debugging.
    Includes websocket frames.
    """
    setup(level=logging.DEBUG)
    logging.getLogger("websockets").setLevel(logging.DEBUG)
