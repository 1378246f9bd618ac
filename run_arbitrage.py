#!/usr/bin/env python3
"""
Crossed-market DEX arbitrage runner.

Discovers WETH markets on the configured factories, then on every new block
refreshes reserves, looks for crossed markets and submits the most profitable
one as a Flashbots bundle.

Usage:
    python3 run_arbitrage.py
    python3 run_arbitrage.py --config configs/crossed_arbitrage.yaml
    python3 run_arbitrage.py --config configs/crossed_arbitrage.yaml --once --dry-run
"""

import argparse
import asyncio
import logging
import sys

from eth_account import Account
from web3 import Web3

import logging_config
from crossed_arbitrage import __version__
from crossed_arbitrage.config import ArbitrageConfig, load_config
from crossed_arbitrage.dex_mev.engine import ArbitrageEngine
from crossed_arbitrage.dex_mev.market_index import (
    UniswapQueryClient,
    get_uniswap_markets_by_token,
)
from crossed_arbitrage.dex_mev.relay import FlashbotsRelay
from crossed_arbitrage.dex_mev.submission import SubmissionPipeline
from crossed_arbitrage.exceptions import ArbitrageError, ConfigurationError
from crossed_arbitrage.metrics import initialize_metrics

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Crossed-market DEX arbitrage engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with environment configuration only
  python3 run_arbitrage.py

  # Single block, simulate but never submit
  python3 run_arbitrage.py --config configs/crossed_arbitrage.yaml --once --dry-run
        """,
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config YAML file (environment variables override it)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle on the current block and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Estimate and simulate bundles but never send them to the relay",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Serve Prometheus metrics on this port",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


async def build_engine(config: ArbitrageConfig, dry_run: bool, metrics) -> ArbitrageEngine:
    w3 = Web3(Web3.HTTPProvider(config.ethereum_rpc_url))
    if not w3.is_connected():
        raise ConfigurationError(f"Cannot connect to {config.ethereum_rpc_url}")

    query_client = UniswapQueryClient(w3, config.lookup_contract_address)
    market_index = await get_uniswap_markets_by_token(
        query_client,
        query_client,
        config.factory_infos(),
        min_liquidity=config.min_liquidity_wei,
        batch_size=config.discovery_batch_size,
        batch_count_limit=config.discovery_batch_count_limit,
        blacklist=config.blacklist_tokens,
    )

    relay = FlashbotsRelay(
        config.flashbots_relay_signing_key,
        config.flashbots_relay_url,
        timeout_seconds=config.relay_timeout_seconds,
    )
    pipeline = SubmissionPipeline(
        w3,
        relay,
        config.bundle_executor_address,
        config.private_key,
        miner_reward_percentage=config.miner_reward_percentage,
        gas_ceiling=config.gas_ceiling,
        priority_fee=config.priority_fee_wei,
        dry_run=dry_run,
        metrics=metrics,
    )
    return ArbitrageEngine(
        w3,
        market_index,
        pipeline,
        min_profit=config.min_profit_wei,
        search=config.search,
        healthcheck_url=config.healthcheck_url,
        healthcheck_timeout=config.healthcheck_timeout_seconds,
        poll_interval=config.poll_interval_seconds,
        metrics=metrics,
    )


async def run(args: argparse.Namespace, config: ArbitrageConfig) -> int:
    metrics = initialize_metrics()
    if args.metrics_port:
        await metrics.start_server(port=args.metrics_port)

    engine = await build_engine(config, args.dry_run, metrics)
    try:
        if args.once:
            await engine.run_once()
        else:
            await engine.run()
    finally:
        await engine.pipeline.relay.close()
        if args.metrics_port:
            await metrics.stop_server()
    return 0


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)
    if args.log_level == "DEBUG":
        logging_config.setup_debug()
    else:
        logging_config.setup(level=getattr(logging, args.log_level))

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Config error: {e}")
        return 1

    logger.info(f"Searcher wallet: {Account.from_key(config.private_key).address}")
    logger.info(f"Executor contract: {config.bundle_executor_address}")

    try:
        return asyncio.run(run(args, config))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return 0
    except ArbitrageError as e:
        logger.error(f"Engine failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
