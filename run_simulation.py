#!/usr/bin/env python3
"""
Mirror Simulation Runner

Runs the replication engine against a simulated exchange with a virtual
USDC balance. No keys and no transactions.

Modes:
    --once              Replicate the target's current portfolio, then report
    (default)           Poll the live feed until Ctrl+C
    --replay FILE       Back-test a recorded JSON list of portfolio responses

Usage:
    python run_simulation.py --target 0xabc... --once
    python run_simulation.py --target 0xabc... --balance 500
    python run_simulation.py --replay recorded_passes.json

Press Ctrl+C to stop and see the final report.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from decimal import Decimal

from dotenv import load_dotenv

from src.execution.simulator import SimulationHarness
from src.feeds import LimitlessPositionFeed, parse_portfolio
from src.mirror.config import load_config
from src.mirror.errors import FeedUnavailable, InvalidConfig
from src.reporting import export_csv, log_summary

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


def parse_args():
    parser = argparse.ArgumentParser(
        description="Mirror Simulation - paper trade a target wallet's positions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=None,
                        help="YAML config file (environment variables override it)")
    parser.add_argument("--target", default=None,
                        help="Target wallet address (default: TARGET_WALLET)")
    parser.add_argument("--balance", type=Decimal, default=None,
                        help="Starting virtual balance in USDC")
    parser.add_argument("--once", action="store_true",
                        help="Run a single pass and exit")
    parser.add_argument("--replay", default=None,
                        help="JSON file with a list of recorded portfolio responses")
    parser.add_argument("--csv", default=None,
                        help="Export simulated trades to this CSV file")
    return parser.parse_args()


def load_replay(path: str):
    """Each element is one pass: a raw portfolio response from the positions API."""
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list of portfolio responses")
    return [parse_portfolio(raw) for raw in data]


class ObservingFeed:
    """Shows the simulated exchange each snapshot batch before the orchestrator sees it."""

    def __init__(self, feed, exchange):
        self._feed = feed
        self._exchange = exchange

    async def fetch_positions(self, address: str):
        snapshots = await self._feed.fetch_positions(address)
        self._exchange.observe(snapshots)
        return snapshots


async def run_live(harness: SimulationHarness, config, once: bool):
    feed = LimitlessPositionFeed(base_url=config.feed_url)
    orchestrator = harness.orchestrator
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, orchestrator.request_stop)
    loop.add_signal_handler(signal.SIGTERM, orchestrator.request_stop)

    try:
        if once:
            try:
                report = await harness.run_once(feed, config.target_wallet)
                logger.info(f"Pass complete: {report}")
            except FeedUnavailable as e:
                logger.error(f"Could not fetch target positions: {e}")
            return

        await orchestrator.run(
            ObservingFeed(feed, harness.exchange), config.target_wallet, config.poll_interval_s,
            on_pass=harness.reports.append,
        )
    finally:
        await feed.close()


async def main() -> int:
    args = parse_args()

    try:
        config = load_config(args.config)
        if args.target:
            config.target_wallet = args.target
        if args.balance is not None:
            config.starting_balance_usdc = args.balance
        config.validate()
    except InvalidConfig as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if not args.replay and not config.target_wallet:
        logger.error("A target wallet is required (--target or TARGET_WALLET)")
        return 1

    logger.info("=" * 60)
    logger.info("LIMITLESS MIRROR - SIMULATION")
    logger.info("=" * 60)
    logger.info(f"Starting balance: ${config.starting_balance_usdc}")
    logger.info(f"Bet multiplier:   {config.bet_multiplier}x "
                f"(min ${config.min_bet_usdc}, max ${config.max_bet_usdc})")
    logger.info(f"Slippage / fee:   {config.slippage_bps} / {config.fee_bps} bps")
    logger.info("=" * 60)

    harness = SimulationHarness(config)

    if args.replay:
        try:
            passes = load_replay(args.replay)
        except (OSError, ValueError) as e:
            logger.error(f"Could not load replay file: {e}")
            return 1
        logger.info(f"Replaying {len(passes)} recorded passes")
        await harness.replay(passes)
    else:
        await run_live(harness, config, args.once)

    harness.log_results()
    log_summary(harness.ledger, title="SIMULATED TRADE SUMMARY")
    if args.csv:
        export_csv(harness.ledger.entries, args.csv)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
