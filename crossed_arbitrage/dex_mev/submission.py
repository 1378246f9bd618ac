"""
Simulation-gated bundle submission.

Each candidate opportunity moves through

    BUILT -> ESTIMATED -> SIMULATED -> SUBMITTED -> DONE

and drops to REJECTED at the first gate it fails. Candidates are tried in
order; the first one to reach the relay ends the cycle. In a dry run the
first candidate to pass simulation ends it instead.

RPC and relay transport errors inside a gate reject only the current
candidate.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from eth_account import Account
from web3 import Web3
from web3.exceptions import Web3Exception

from ..exceptions import (
    AnomalousGasEstimate,
    EstimationFailure,
    NetworkError,
    NoOpportunitySubmitted,
    PipelineGateError,
    SimulationFailure,
    SimulationRejected,
    TransactionPreparationFailure,
)
from ..utils import format_ether
from .bundle import (
    DEFAULT_MINER_REWARD_PERCENTAGE,
    TradeInstructionBundle,
    build_bundle,
    build_executor_transaction,
)
from .optimizer import CrossedMarketDetails
from .relay import FlashbotsRelay, SimulationResult, sign_bundle

logger = logging.getLogger(__name__)

GAS_ESTIMATE_CEILING = 1_400_000
# Blocks ahead of the current head a bundle is sent for
TARGET_BLOCK_OFFSETS = (1, 2)


class SubmissionState(Enum):
    BUILT = "built"
    ESTIMATED = "estimated"
    SIMULATED = "simulated"
    SUBMITTED = "submitted"
    DONE = "done"
    REJECTED = "rejected"


@dataclass
class SubmissionAttempt:
    """Record of one opportunity's trip through the pipeline."""

    opportunity: CrossedMarketDetails
    block_number: int
    state: SubmissionState = SubmissionState.BUILT
    bundle: Optional[TradeInstructionBundle] = None
    gas_estimate: Optional[int] = None
    simulation: Optional[SimulationResult] = None
    reason: Optional[str] = None
    bundle_hashes: List[str] = field(default_factory=list)
    submission_errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == SubmissionState.DONE

    def reject(self, error: PipelineGateError) -> None:
        self.state = SubmissionState.REJECTED
        self.reason = error.reason


class SubmissionPipeline:
    """
    Gates candidate opportunities and submits the first survivor to the relay.

    With ``dry_run`` nothing is sent: execute() returns the first candidate
    that passes simulation, in the SIMULATED state.

    Args:
        w3: Connected Web3 instance used for gas estimation and tx population
        relay: Relay client for simulation and submission
        executor_address: Bundle executor contract
        private_key: Key of the executor wallet that signs the transaction
        miner_reward_percentage: Share of profit paid to the block producer
        gas_ceiling: Largest gas estimate that is still considered sane
        priority_fee: maxPriorityFeePerGas for type-2 transactions
        dry_run: Stop after a successful simulation, never call eth_sendBundle
        metrics: Optional ArbitrageMetrics
    """

    def __init__(
        self,
        w3: Web3,
        relay: FlashbotsRelay,
        executor_address: str,
        private_key: str,
        miner_reward_percentage: int = DEFAULT_MINER_REWARD_PERCENTAGE,
        gas_ceiling: int = GAS_ESTIMATE_CEILING,
        priority_fee: int = 0,
        dry_run: bool = False,
        metrics=None,
    ):
        self.w3 = w3
        self.relay = relay
        self.executor_address = executor_address
        self.private_key = private_key
        self.executor_wallet = Account.from_key(private_key).address
        self.miner_reward_percentage = miner_reward_percentage
        self.gas_ceiling = gas_ceiling
        self.priority_fee = priority_fee
        self.dry_run = dry_run
        self.metrics = metrics
        self.attempts: List[SubmissionAttempt] = []

    async def _call(self, func, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func, *args)

    async def execute(
        self, best_crossed_markets: Sequence[CrossedMarketDetails], block_number: int
    ) -> SubmissionAttempt:
        """
        Try candidates in order until one is submitted (or, in a dry run,
        simulated successfully).

        Raises:
            NoOpportunitySubmitted: If every candidate was rejected
        """
        self.attempts = []
        for crossed_market in best_crossed_markets:
            attempt = await self.attempt(crossed_market, block_number)
            self.attempts.append(attempt)
            if attempt.state in (SubmissionState.DONE, SubmissionState.SIMULATED):
                return attempt

        raise NoOpportunitySubmitted(
            block_number=block_number,
            attempts=len(self.attempts),
            details={"reasons": [a.reason for a in self.attempts]},
        )

    async def attempt(
        self, crossed_market: CrossedMarketDetails, block_number: int
    ) -> SubmissionAttempt:
        """Run one opportunity through every gate; never raises gate errors."""
        attempt = SubmissionAttempt(opportunity=crossed_market, block_number=block_number)
        attempt.bundle = build_bundle(
            crossed_market, self.executor_address, self.miner_reward_percentage
        )
        transaction = build_executor_transaction(
            attempt.bundle, self.executor_address, self.executor_wallet
        )

        try:
            attempt.gas_estimate = await self.estimate(transaction, crossed_market)
            transaction = {**transaction, "gas": attempt.gas_estimate * 2}
            attempt.state = SubmissionState.ESTIMATED

            signed_bundle = await self.prepare(transaction, crossed_market)

            attempt.simulation = await self.simulate(
                signed_bundle, block_number, crossed_market
            )
            attempt.state = SubmissionState.SIMULATED
        except PipelineGateError as e:
            logger.warning(f"{e.reason}: {e}")
            attempt.reject(e)
            if self.metrics:
                self.metrics.record_rejection(e.reason)
            return attempt

        logger.info(
            f"Submitting bundle, profit sent to miner: "
            f"{format_ether(attempt.simulation.coinbase_diff)}, "
            f"effective gas price: {attempt.simulation.effective_gas_price / 10**9:.2f} GWEI"
        )
        if self.dry_run:
            logger.info("Dry run: bundle not sent to relay")
            attempt.reason = "dry_run"
            return attempt

        await self.submit(attempt, signed_bundle, block_number)
        return attempt

    async def estimate(
        self, transaction: Dict[str, Any], crossed_market: CrossedMarketDetails
    ) -> int:
        try:
            estimate = await self._call(self.w3.eth.estimate_gas, transaction)
        except (Web3Exception, ValueError, OSError) as e:
            raise EstimationFailure(
                f"Estimate gas failure for {crossed_market.token_address}: {e}",
                token_address=crossed_market.token_address,
            ) from e

        if estimate > self.gas_ceiling:
            raise AnomalousGasEstimate(
                f"EstimateGas succeeded, but suspiciously large: {estimate}",
                estimate=estimate,
                ceiling=self.gas_ceiling,
                token_address=crossed_market.token_address,
            )
        return estimate

    async def prepare(
        self, transaction: Dict[str, Any], crossed_market: CrossedMarketDetails
    ) -> List[str]:
        """Populate and sign the executor transaction as a one-transaction bundle."""
        try:
            transaction = await self.populate_transaction(transaction)
            return sign_bundle([transaction], self.private_key)
        except (Web3Exception, ValueError, OSError) as e:
            raise TransactionPreparationFailure(
                f"Could not prepare transaction for {crossed_market.token_address}: {e}",
                token_address=crossed_market.token_address,
            ) from e

    async def populate_transaction(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """Fill nonce, chain id and fee fields so the transaction can be signed."""
        tx = dict(transaction)
        tx["nonce"] = await self._call(
            self.w3.eth.get_transaction_count, self.executor_wallet
        )
        tx["chainId"] = await self._call(lambda: self.w3.eth.chain_id)
        latest = await self._call(self.w3.eth.get_block, "latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            # Pre-London: the block producer is paid through coinbase alone
            tx["gasPrice"] = 0
        else:
            tx["maxPriorityFeePerGas"] = self.priority_fee
            tx["maxFeePerGas"] = 2 * base_fee + self.priority_fee
            tx["type"] = 2
        return tx

    async def simulate(
        self,
        signed_bundle: Sequence[str],
        block_number: int,
        crossed_market: CrossedMarketDetails,
    ) -> SimulationResult:
        try:
            simulation = await self.relay.simulate(signed_bundle, block_number + 1)
        except NetworkError as e:
            raise SimulationFailure(
                f"Simulation request for {crossed_market.token_address} failed: {e}",
                token_address=crossed_market.token_address,
            ) from e
        if simulation.error is not None:
            raise SimulationRejected(
                f"Simulation error for {crossed_market.token_address}: {simulation.error}",
                token_address=crossed_market.token_address,
            )
        if simulation.first_revert is not None:
            raise SimulationRejected(
                f"Simulation reverted for {crossed_market.token_address}: "
                f"{simulation.first_revert}",
                token_address=crossed_market.token_address,
            )
        logger.debug(f"Simulation ok: {simulation.describe()}")
        return simulation

    async def submit(
        self, attempt: SubmissionAttempt, signed_bundle: Sequence[str], block_number: int
    ) -> None:
        """Send the bundle for each target block concurrently."""
        target_blocks = [block_number + offset for offset in TARGET_BLOCK_OFFSETS]
        attempt.state = SubmissionState.SUBMITTED
        results = await asyncio.gather(
            *[self.relay.send_raw_bundle(signed_bundle, target) for target in target_blocks],
            return_exceptions=True,
        )

        for target, result in zip(target_blocks, results):
            if isinstance(result, Exception):
                logger.error(f"Bundle submission for block {target} failed: {result}")
                attempt.submission_errors.append(str(result))
                if self.metrics:
                    self.metrics.record_submission(False)
                continue
            bundle_hash = result.get("bundleHash")
            if bundle_hash:
                attempt.bundle_hashes.append(bundle_hash)
            if self.metrics:
                self.metrics.record_submission(True)

        log_data = {
            "token": attempt.opportunity.token_address,
            "profit_eth": format_ether(attempt.opportunity.profit),
            "volume_eth": format_ether(attempt.opportunity.volume),
            "miner_reward_eth": format_ether(attempt.bundle.miner_reward),
            "gas_estimate": attempt.gas_estimate,
            "target_blocks": target_blocks,
            "bundle_hashes": attempt.bundle_hashes,
            "errors": attempt.submission_errors,
        }
        if len(attempt.submission_errors) == len(target_blocks):
            attempt.state = SubmissionState.REJECTED
            attempt.reason = "submit_failed"
            if self.metrics:
                self.metrics.record_rejection(attempt.reason)
            logger.error(f"BUNDLE_FAILED: {log_data}")
            return

        attempt.state = SubmissionState.DONE
        logger.info(f"BUNDLE_SUBMITTED: {log_data}")
