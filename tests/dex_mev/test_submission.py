"""
Test the estimate / simulate / submit gates of the submission pipeline.
"""

from unittest.mock import AsyncMock, Mock, PropertyMock

import pytest
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from crossed_arbitrage.dex_mev.addresses import WETH_ADDRESS
from crossed_arbitrage.dex_mev.market import UniswappyV2EthPair
from crossed_arbitrage.dex_mev.optimizer import CrossedMarketDetails, round_trip_profit
from crossed_arbitrage.dex_mev.relay import FlashbotsRelay, SimulationResult
from crossed_arbitrage.dex_mev.submission import SubmissionPipeline, SubmissionState
from crossed_arbitrage.exceptions import NetworkError, NoOpportunitySubmitted
from crossed_arbitrage.utils import ETHER, GWEI

PRIVATE_KEY = "0x" + "01" * 32
EXECUTOR = Web3.to_checksum_address("0x" + "ee" * 20)
BLOCK = 17_000_000


def make_crossed_market(token_byte: str = "11") -> CrossedMarketDetails:
    token = Web3.to_checksum_address("0x" + token_byte * 20)
    buy_from = UniswappyV2EthPair(
        Web3.to_checksum_address("0x" + "a" + token_byte * 19 + "a"), [WETH_ADDRESS, token], "A"
    )
    buy_from.set_reserves_via_ordered_balances([100 * ETHER, 100 * ETHER])
    sell_to = UniswappyV2EthPair(
        Web3.to_checksum_address("0x" + "b" + token_byte * 19 + "b"), [WETH_ADDRESS, token], "B"
    )
    sell_to.set_reserves_via_ordered_balances([100 * ETHER, 80 * ETHER])
    volume = 5 * ETHER
    return CrossedMarketDetails(
        round_trip_profit(sell_to, buy_from, token, volume), volume, token, buy_from, sell_to
    )


def ok_simulation() -> SimulationResult:
    return SimulationResult(
        bundle_hash="0xsim",
        coinbase_diff=ETHER // 2,
        total_gas_used=200_000,
        results=[{"txHash": "0x01", "gasUsed": 200_000}],
    )


@pytest.fixture
def w3():
    mock = Mock()
    mock.eth.estimate_gas.return_value = 300_000
    mock.eth.get_transaction_count.return_value = 7
    mock.eth.chain_id = 1
    mock.eth.get_block.return_value = {"baseFeePerGas": 10 * GWEI}
    return mock


@pytest.fixture
def relay():
    mock = Mock(spec=FlashbotsRelay)
    mock.simulate = AsyncMock(return_value=ok_simulation())
    mock.send_raw_bundle = AsyncMock(return_value={"bundleHash": "0xbundle"})
    return mock


@pytest.fixture
def pipeline(w3, relay):
    return SubmissionPipeline(w3, relay, EXECUTOR, PRIVATE_KEY, miner_reward_percentage=80)


class TestSubmissionPipeline:
    @pytest.mark.asyncio
    async def test_successful_submission(self, pipeline, relay, w3):
        attempt = await pipeline.execute([make_crossed_market()], BLOCK)

        assert attempt.state == SubmissionState.DONE
        assert attempt.succeeded
        assert attempt.gas_estimate == 300_000
        assert attempt.bundle_hashes == ["0xbundle", "0xbundle"]
        relay.simulate.assert_awaited_once()
        assert relay.simulate.await_args.args[1] == BLOCK + 1
        target_blocks = [c.args[1] for c in relay.send_raw_bundle.await_args_list]
        assert target_blocks == [BLOCK + 1, BLOCK + 2]

        estimated_tx = w3.eth.estimate_gas.call_args.args[0]
        assert estimated_tx["to"] == EXECUTOR
        assert estimated_tx["gas"] == 1_000_000

    @pytest.mark.asyncio
    async def test_estimation_failure_rejects(self, pipeline, relay, w3):
        w3.eth.estimate_gas.side_effect = ContractLogicError("execution reverted")

        with pytest.raises(NoOpportunitySubmitted) as exc_info:
            await pipeline.execute([make_crossed_market()], BLOCK)

        assert exc_info.value.attempts == 1
        assert pipeline.attempts[0].state == SubmissionState.REJECTED
        assert pipeline.attempts[0].reason == "estimate_failed"
        relay.simulate.assert_not_awaited()
        relay.send_raw_bundle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_anomalous_estimate_rejects(self, pipeline, relay, w3):
        w3.eth.estimate_gas.return_value = 1_400_001

        with pytest.raises(NoOpportunitySubmitted):
            await pipeline.execute([make_crossed_market()], BLOCK)

        assert pipeline.attempts[0].reason == "estimate_anomalous"
        relay.simulate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_estimate_at_ceiling_is_accepted(self, pipeline, w3):
        w3.eth.estimate_gas.return_value = 1_400_000
        attempt = await pipeline.execute([make_crossed_market()], BLOCK)
        assert attempt.succeeded

    @pytest.mark.asyncio
    async def test_simulation_revert_is_never_submitted(self, pipeline, relay):
        relay.simulate.return_value = SimulationResult(
            results=[{"txHash": "0x01", "revert": "UniswapV2: K"}],
            first_revert={"txHash": "0x01", "revert": "UniswapV2: K"},
        )

        with pytest.raises(NoOpportunitySubmitted):
            await pipeline.execute([make_crossed_market()], BLOCK)

        assert pipeline.attempts[0].reason == "simulation_rejected"
        relay.send_raw_bundle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_simulation_error_is_never_submitted(self, pipeline, relay):
        relay.simulate.return_value = SimulationResult(error={"message": "nonce too low"})

        with pytest.raises(NoOpportunitySubmitted):
            await pipeline.execute([make_crossed_market()], BLOCK)

        relay.send_raw_bundle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_through_to_next_candidate(self, pipeline, relay):
        relay.simulate.side_effect = [
            SimulationResult(first_revert={"error": "reverted"}),
            ok_simulation(),
        ]
        first, second = make_crossed_market("11"), make_crossed_market("22")

        attempt = await pipeline.execute([first, second], BLOCK)

        assert attempt.opportunity is second
        assert [a.state for a in pipeline.attempts] == [
            SubmissionState.REJECTED,
            SubmissionState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_unreachable_rpc_during_estimate_moves_on(self, pipeline, w3):
        w3.eth.estimate_gas.side_effect = [ConnectionError("connection refused"), 300_000]
        second = make_crossed_market("22")

        attempt = await pipeline.execute([make_crossed_market("11"), second], BLOCK)

        assert attempt.opportunity is second
        assert attempt.succeeded
        assert pipeline.attempts[0].reason == "estimate_failed"

    @pytest.mark.asyncio
    async def test_nonce_lookup_failure_moves_on(self, pipeline, relay, w3):
        w3.eth.get_transaction_count.side_effect = [Web3Exception("rpc timeout"), 7]
        second = make_crossed_market("22")

        attempt = await pipeline.execute([make_crossed_market("11"), second], BLOCK)

        assert attempt.opportunity is second
        assert [a.state for a in pipeline.attempts] == [
            SubmissionState.REJECTED,
            SubmissionState.DONE,
        ]
        assert pipeline.attempts[0].reason == "populate_failed"
        relay.simulate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_chain_id_failure_rejects_candidate(self, w3, relay):
        type(w3.eth).chain_id = PropertyMock(side_effect=OSError("socket closed"))
        metrics = Mock()
        pipeline = SubmissionPipeline(w3, relay, EXECUTOR, PRIVATE_KEY, metrics=metrics)

        with pytest.raises(NoOpportunitySubmitted):
            await pipeline.execute([make_crossed_market()], BLOCK)

        assert pipeline.attempts[0].state == SubmissionState.REJECTED
        assert pipeline.attempts[0].reason == "populate_failed"
        metrics.record_rejection.assert_called_once_with("populate_failed")
        relay.simulate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreachable_relay_during_simulation_moves_on(self, pipeline, relay):
        relay.simulate.side_effect = [NetworkError("relay unreachable"), ok_simulation()]
        second = make_crossed_market("22")

        attempt = await pipeline.execute([make_crossed_market("11"), second], BLOCK)

        assert attempt.opportunity is second
        assert attempt.succeeded
        assert pipeline.attempts[0].reason == "simulation_failed"
        assert relay.send_raw_bundle.await_count == 2

    @pytest.mark.asyncio
    async def test_one_failed_target_does_not_cancel_other(self, pipeline, relay):
        relay.send_raw_bundle.side_effect = [
            NetworkError("relay down"),
            {"bundleHash": "0xsecond"},
        ]

        attempt = await pipeline.execute([make_crossed_market()], BLOCK)

        assert relay.send_raw_bundle.await_count == 2
        assert attempt.state == SubmissionState.DONE
        assert attempt.bundle_hashes == ["0xsecond"]
        assert attempt.submission_errors == ["relay down"]

    @pytest.mark.asyncio
    async def test_all_targets_failing_rejects(self, pipeline, relay):
        relay.send_raw_bundle.side_effect = NetworkError("relay down")

        with pytest.raises(NoOpportunitySubmitted):
            await pipeline.execute([make_crossed_market()], BLOCK)

        assert pipeline.attempts[0].reason == "submit_failed"

    @pytest.mark.asyncio
    async def test_dry_run_stops_after_simulation(self, w3, relay):
        pipeline = SubmissionPipeline(w3, relay, EXECUTOR, PRIVATE_KEY, dry_run=True)

        attempt = await pipeline.execute([make_crossed_market()], BLOCK)

        assert attempt.state == SubmissionState.SIMULATED
        assert attempt.reason == "dry_run"
        relay.send_raw_bundle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dry_run_stops_at_first_simulated_candidate(self, w3, relay):
        pipeline = SubmissionPipeline(w3, relay, EXECUTOR, PRIVATE_KEY, dry_run=True)
        first = make_crossed_market("11")

        attempt = await pipeline.execute([first, make_crossed_market("22")], BLOCK)

        assert attempt.opportunity is first
        assert len(pipeline.attempts) == 1
        relay.simulate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_candidate_list(self, pipeline):
        with pytest.raises(NoOpportunitySubmitted) as exc_info:
            await pipeline.execute([], BLOCK)
        assert exc_info.value.attempts == 0

    @pytest.mark.asyncio
    async def test_rejections_recorded_in_metrics(self, w3, relay):
        metrics = Mock()
        w3.eth.estimate_gas.side_effect = ValueError("execution reverted")
        pipeline = SubmissionPipeline(w3, relay, EXECUTOR, PRIVATE_KEY, metrics=metrics)

        with pytest.raises(NoOpportunitySubmitted):
            await pipeline.execute([make_crossed_market()], BLOCK)

        metrics.record_rejection.assert_called_once_with("estimate_failed")


class TestPopulateTransaction:
    @pytest.mark.asyncio
    async def test_eip1559_fields(self, pipeline):
        tx = await pipeline.populate_transaction({"to": EXECUTOR, "gas": 600_000})
        assert tx["nonce"] == 7
        assert tx["chainId"] == 1
        assert tx["type"] == 2
        assert tx["maxPriorityFeePerGas"] == 0
        assert tx["maxFeePerGas"] == 20 * GWEI
        assert "gasPrice" not in tx

    @pytest.mark.asyncio
    async def test_legacy_without_base_fee(self, pipeline, w3):
        w3.eth.get_block.return_value = {}
        tx = await pipeline.populate_transaction({"to": EXECUTOR, "gas": 600_000})
        assert tx["gasPrice"] == 0
        assert "maxFeePerGas" not in tx
