"""
Per-block arbitrage loop.

A watcher task polls the chain head and hands block numbers to a single
consumer through a one-slot queue. If a block arrives while the previous
cycle is still running, the pending trigger is replaced by the newer block,
so cycles never overlap and never work on a stale head.
"""

import asyncio
import logging
import time
from typing import List, Optional

import aiohttp
from web3 import Web3
from web3.exceptions import Web3Exception

from ..exceptions import DataError, NoOpportunitySubmitted
from ..utils import format_duration, format_ether
from .market_index import MarketIndex
from .optimizer import (
    DEFAULT_MIN_PROFIT,
    SEARCH_LADDER,
    CrossedMarketDetails,
    evaluate_markets,
    log_opportunity,
    print_crossed_market,
)
from .submission import SubmissionAttempt, SubmissionPipeline

logger = logging.getLogger(__name__)


class LatestBlockQueue:
    """One-slot queue that keeps only the newest pending block."""

    def __init__(self, metrics=None):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self.metrics = metrics
        self.dropped = 0

    def put_latest(self, block_number: int) -> None:
        if self._queue.full():
            stale = self._queue.get_nowait()
            self.dropped += 1
            if self.metrics:
                self.metrics.record_dropped_trigger()
            logger.debug(f"Dropping block {stale} trigger in favour of {block_number}")
        self._queue.put_nowait(block_number)

    async def get(self) -> int:
        return await self._queue.get()

    def empty(self) -> bool:
        return self._queue.empty()


class ArbitrageEngine:
    """
    Runs refresh -> scan -> optimize -> submit once per block.

    Args:
        w3: Web3 instance used to follow the chain head
        market_index: Discovered markets and their reserve source
        pipeline: Submission pipeline for the cycle's opportunities
        min_profit: Smallest profit (wei) worth submitting
        search: Volume search strategy for the optimizer
        healthcheck_url: Optional URL pinged after a successful submission
        metrics: Optional ArbitrageMetrics
    """

    def __init__(
        self,
        w3: Web3,
        market_index: MarketIndex,
        pipeline: SubmissionPipeline,
        min_profit: int = DEFAULT_MIN_PROFIT,
        search: str = SEARCH_LADDER,
        healthcheck_url: Optional[str] = None,
        healthcheck_timeout: float = 5.0,
        poll_interval: float = 1.0,
        metrics=None,
    ):
        self.w3 = w3
        self.market_index = market_index
        self.pipeline = pipeline
        self.min_profit = min_profit
        self.search = search
        self.healthcheck_url = healthcheck_url
        self.healthcheck_timeout = healthcheck_timeout
        self.poll_interval = poll_interval
        self.metrics = metrics
        self.queue = LatestBlockQueue(metrics)
        self._stop = asyncio.Event()
        self.cycles_run = 0

    async def _block_number(self) -> int:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: self.w3.eth.block_number)

    async def watch_blocks(self) -> None:
        """Poll the chain head and enqueue every new block number."""
        last_seen: Optional[int] = None
        while not self._stop.is_set():
            try:
                block_number = await self._block_number()
            except (Web3Exception, OSError) as e:
                logger.warning(f"Failed to read block number: {e}")
                block_number = None

            if block_number is not None and (last_seen is None or block_number > last_seen):
                last_seen = block_number
                self.queue.put_latest(block_number)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def find_opportunities(self) -> List[CrossedMarketDetails]:
        best_crossed_markets = evaluate_markets(
            self.market_index.markets_by_token,
            self.min_profit,
            self.market_index.base_token,
            self.search,
        )
        if self.metrics:
            best_profit = best_crossed_markets[0].profit if best_crossed_markets else 0
            self.metrics.record_opportunities(
                len(best_crossed_markets), float(format_ether(best_profit))
            )
        return best_crossed_markets

    async def run_cycle(self, block_number: int) -> Optional[SubmissionAttempt]:
        """One full cycle for ``block_number``; returns the submitted attempt, if any."""
        started = time.time()
        self.cycles_run += 1
        status = "error"
        try:
            try:
                await self.market_index.refresh(block_number)
            except (DataError, Web3Exception, OSError) as e:
                status = "refresh_failed"
                logger.error(f"Reserve refresh for block {block_number} failed: {e}")
                if self.metrics:
                    self.metrics.record_system_error("refresh_failed")
                return None

            if self.metrics:
                self.metrics.record_refresh(
                    time.time() - started,
                    self.market_index.version,
                    sum(len(m) for m in self.market_index.markets_by_token.values()),
                )

            best_crossed_markets = self.find_opportunities()
            if not best_crossed_markets:
                status = "no_opportunity"
                logger.info(f"Block {block_number}: No crossed markets")
                return None

            for rank, crossed_market in enumerate(best_crossed_markets, 1):
                print_crossed_market(crossed_market)
                log_opportunity(rank, crossed_market)

            try:
                attempt = await self.pipeline.execute(best_crossed_markets, block_number)
            except NoOpportunitySubmitted as e:
                status = "rejected"
                logger.info(f"Block {block_number}: {e} ({e.attempts} candidates)")
                return None

            status = "submitted" if attempt.succeeded else "dry_run"
            if attempt.succeeded:
                await self.healthcheck()
            return attempt
        finally:
            duration = time.time() - started
            logger.info(f"Block {block_number} cycle {status} in {format_duration(duration)}")
            if self.metrics:
                self.metrics.record_cycle(status, duration, block_number)

    async def healthcheck(self) -> bool:
        """GET the configured health-check URL; failures are only logged."""
        if not self.healthcheck_url:
            return False
        timeout = aiohttp.ClientTimeout(total=self.healthcheck_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.healthcheck_url) as resp:
                    if resp.status >= 400:
                        logger.warning(f"Healthcheck returned HTTP {resp.status}")
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Healthcheck failed: {e}")
            return False

    async def run_once(self) -> Optional[SubmissionAttempt]:
        return await self.run_cycle(await self._block_number())

    async def run(self) -> None:
        """Consume block triggers until stop() is called."""
        watcher = asyncio.create_task(self.watch_blocks())
        stop_waiter = asyncio.create_task(self._stop.wait())
        try:
            while not self._stop.is_set():
                next_block = asyncio.create_task(self.queue.get())
                done, _ = await asyncio.wait(
                    {next_block, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if next_block not in done:
                    next_block.cancel()
                    break
                block_number = next_block.result()
                try:
                    await self.run_cycle(block_number)
                except Exception:
                    logger.exception(f"Cycle for block {block_number} failed")
                    if self.metrics:
                        self.metrics.record_system_error("cycle_failed")
        finally:
            self._stop.set()
            for task in (watcher, stop_waiter):
                task.cancel()
            await asyncio.gather(watcher, stop_waiter, return_exceptions=True)

    def stop(self) -> None:
        self._stop.set()
