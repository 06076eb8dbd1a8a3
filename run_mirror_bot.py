#!/usr/bin/env python3
"""
Limitless Mirror Bot

Polls a target wallet's Limitless positions and mirrors opens, switches and
closes with our own wallet on Base.

Strategy:
1. First pass captures the target's existing holdings (nothing is traded)
2. Every poll, diff the target's positions against the last pass
3. Replicate OPENED / SWITCHED / CLOSED changes, sized by the bet multiplier
4. Redeem winning positions once a market resolves

Usage:
    python run_mirror_bot.py
    python run_mirror_bot.py --config config.yaml
"""

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from src.execution.chain_connector import Web3MarketConnector
from src.feeds import LimitlessPositionFeed
from src.ledger import TradeLedger
from src.mirror.config import load_config
from src.mirror.errors import InvalidConfig
from src.positions.orchestrator import ReplicationOrchestrator
from src.positions.state_store import StateStore
from src.reporting import LoggingEventSink, Reporter, export_csv

# Load environment variables
load_dotenv()

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

# Reduce noise from other loggers
logging.getLogger("aiohttp").setLevel(logging.WARNING)
logging.getLogger("web3").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)


def parse_args():
    parser = argparse.ArgumentParser(
        description="Limitless Mirror Bot - replicate a target wallet's positions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Required environment (or config file keys):
  RPC_URL, PRIVATE_KEY, TARGET_WALLET

Examples:
  python run_mirror_bot.py                          # Settings from .env
  python run_mirror_bot.py --config config.yaml     # YAML file, env overrides
  python run_mirror_bot.py --replicate-initial      # Also copy existing holdings
        """
    )
    parser.add_argument("--config", default=None,
                        help="YAML config file (environment variables override it)")
    parser.add_argument("--replicate-initial", action="store_true",
                        help="Replicate the target's existing holdings on the first pass")
    parser.add_argument("--no-delay", action="store_true",
                        help="Skip the 5 second safety countdown before trading")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging")
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config)
        config.validate_live()
    except InvalidConfig as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    connector = Web3MarketConnector(
        rpc_url=config.rpc_url,
        private_key=config.private_key,
        chain_id=config.chain_id,
        max_fee_budget_wei=config.max_fee_budget_wei,
        fallback_gas_price_wei=config.gas_price_wei,
        confirmation_timeout=config.confirmation_timeout_s,
    )
    if not connector.initialize():
        logger.error("Could not connect to the chain, exiting")
        return 1

    logger.warning("=" * 60)
    logger.warning("LIVE MIRROR MODE WITH REAL MONEY")
    logger.warning("=" * 60)
    logger.warning(f"Target wallet:  {config.target_wallet}")
    logger.warning(f"Our wallet:     {connector.address}")
    logger.warning(f"Bet multiplier: {config.bet_multiplier}x "
                   f"(min ${config.min_bet_usdc}, max ${config.max_bet_usdc})")
    logger.warning(f"Poll interval:  {config.poll_interval_s:.1f}s")
    if not args.no_delay:
        logger.warning("Press Ctrl+C within 5 seconds to cancel...")
        logger.warning("=" * 60)
        await asyncio.sleep(5)

    feed = LimitlessPositionFeed(base_url=config.feed_url)
    ledger = TradeLedger(config.trades_file)
    orchestrator = ReplicationOrchestrator(
        connector=connector,
        ledger=ledger,
        config=config,
        state_store=StateStore(config.state_file),
        sink=LoggingEventSink(),
        replicate_initial=args.replicate_initial,
    )
    reporter = Reporter(ledger, orchestrator, mode_label="LIVE", interval=config.summary_interval_s)

    running = True

    def signal_handler():
        nonlocal running
        logger.info("\nReceived shutdown signal...")
        running = False
        orchestrator.request_stop()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, signal_handler)
    loop.add_signal_handler(signal.SIGTERM, signal_handler)

    report_task = asyncio.create_task(reporter.periodic_report(lambda: running))
    try:
        await orchestrator.run(feed, config.target_wallet, config.poll_interval_s)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise
    finally:
        running = False
        report_task.cancel()
        orchestrator.shutdown()
        reporter.print_final_report()
        export_csv(ledger.entries, config.trades_csv)
        await feed.close()
        await connector.close()

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
