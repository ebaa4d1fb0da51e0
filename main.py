#!/usr/bin/env python3
"""
Run the flash-loan triangular arbitrage bot.

Watches the most active pools of each configured DEX, detects swaps whose
price impact opens a three-leg arbitrage, and triggers the flash-loan
arbitrage contract.

MODES:
  1. Dry Run (default): Detect and log what would be executed
  2. Live: Sign and send transactions (REQUIRES WALLET_PRIVATE_KEY)

Usage:
  # Dry run
  python main.py --config configs/polygon_uniswap_v3.yaml

  # Live execution
  export WALLET_PRIVATE_KEY="0x..."
  python main.py --config configs/polygon_uniswap_v3.yaml --live

Environment Variables:
  WALLET_PRIVATE_KEY: Private key for signing transactions (required for --live)
  THE_GRAPH_API_KEY: The Graph gateway API key
  RPC_HTTP_URL / RPC_WS_URL: Override the configured RPC endpoints
  FLASH_ARBITRAGE_CONTRACT: Override the configured arbitrage contract
"""

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys

import logging_config
from flash_arbitrage.config_loader import load_bot_config
from flash_arbitrage.controller import Controller
from flash_arbitrage.exceptions import ConfigurationError
from flash_arbitrage.utils import get_logger

logger = get_logger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Flash-loan triangular arbitrage bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=str,
        required=True,
        help="Path to bot config YAML file",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="Path to a .env file (default: search from the working directory)",
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate execution, no transactions are signed [DEFAULT]",
    )
    mode_group.add_argument(
        "--live",
        action="store_true",
        help="Sign and send real transactions (REQUIRES WALLET_PRIVATE_KEY)",
    )

    parser.add_argument(
        "--max-pools",
        type=int,
        help="Limit discovered pools per venue",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Warnings and errors only")
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Debug output")

    return parser.parse_args(argv)


def apply_overrides(config, args):
    """Apply command line overrides to the frozen configuration."""
    if args.live:
        config = dataclasses.replace(
            config, execution=dataclasses.replace(config.execution, dry_run=False)
        )
    elif args.dry_run:
        config = dataclasses.replace(
            config, execution=dataclasses.replace(config.execution, dry_run=True)
        )
    if args.max_pools:
        config = dataclasses.replace(
            config, discovery=dataclasses.replace(config.discovery, limit=args.max_pools)
        )
    return config


async def run(config) -> int:
    controller = Controller(config)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await controller.run(stop_event)
    # Returning without a stop request means no venue started or the stream gave up
    return 0 if stop_event.is_set() else 1


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.quiet:
        logging_config.setup_minimal()
    elif args.verbose:
        logging_config.setup_debug()
    else:
        logging_config.setup()

    try:
        logger.info(f"Loading config from {args.config}...")
        config = apply_overrides(load_bot_config(args.config, env_file=args.env_file), args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    mode_name = "DRY RUN" if config.execution.dry_run else "LIVE"
    logger.info(f"Execution Mode: {mode_name}")
    logger.info(f"Venues: {', '.join(v.name for v in config.venues)}")

    try:
        return asyncio.run(run(config))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=logging.getLogger().isEnabledFor(logging.DEBUG))
        return 1


if __name__ == "__main__":
    sys.exit(main())
