#!/usr/bin/env python3
"""Entry point for the interop indexer service.

Loads configuration from the environment (and an optional .env file),
starts one scanner per configured chain and pairs the interop messages
they observe until interrupted.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

# Allow running from a checkout without installing the package
sys.path.insert(0, str(Path(__file__).parent / "src"))

from interop_indexer.errors import ConfigError
from interop_indexer.models import PairingNotification
from interop_indexer.supervisor import EXIT_CONFIG_ERROR, EXIT_OK, Supervisor


def log_pairing(notification: PairingNotification) -> None:
    """Default downstream consumer: one line per paired message."""
    executing = notification.executing
    logger.info(
        f"PAIRED #{notification.sequence}: {notification.identifier} "
        f"executed on chain {executing.chain_id} block {executing.block_number} "
        f"tx 0x{executing.dest_tx_hash.hex()}"
    )


async def main() -> int:
    """Main entry point for the interop indexer.

    Parses startup arguments, loads configuration from environment and runs
    the supervisor until a signal or a fatal scanner failure stops it.

    Returns:
        Process exit code
    """
    load_dotenv()

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Interop Indexer - Pair cross-chain messages across EVM chains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  API_KEY               - RPC provider key appended to every URL (or ALCHEMY_API_KEY)
  SUPPORTED_CHAINS      - Name:chain_id pairs (default: Optimism:10,Base:8453)
  RPC_URL_<NAME>        - Base RPC URL per chain
  START_BLOCK_<NAME>    - First block to scan per chain (default: 0)
  EVENT_KINDS_<NAME>    - initiating,executing (default: both)
  BLOCK_RANGE_SIZE      - Max blocks per eth_getLogs (default: 5)
  CONFIRMATION_DEPTH    - Blocks behind head considered stable (default: 5)
  POLLING_INTERVAL      - Seconds between head polls (default: 4)
  CURSOR_FILE           - JSON checkpoint file (default: in memory)
  LOG_LEVEL             - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    parser.add_argument(
        "--cursor-file",
        default=None,
        help="Persist scanner cursors to this JSON file (overrides CURSOR_FILE)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Interop Indexer Starting ===")

    try:
        supervisor: Supervisor = Supervisor.from_env(cursor_path=args.cursor_file)
    except ConfigError as e:
        logger.critical(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - API_KEY: RPC provider key")
        logger.error("  - SUPPORTED_CHAINS: e.g. Optimism:10,Base:8453")
        logger.error("  - RPC_URL_<NAME>: required for chains without a default URL")
        return EXIT_CONFIG_ERROR

    supervisor.add_listener(log_pairing)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, supervisor.stop)

    exit_code = await supervisor.run()
    if exit_code != EXIT_OK:
        logger.critical(f"Interop indexer exited after fatal errors: {', '.join(supervisor.failures)}")
    return exit_code


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except Exception as e:
        logger.critical(f"Fatal Error: {e}", exc_info=True)
        sys.exit(2)
