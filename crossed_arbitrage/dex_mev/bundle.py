"""
Bundle construction: turn a crossed market into ordered executor calls.
"""

from dataclasses import dataclass
from typing import Any, Dict, Tuple

from web3 import Web3

from ..exceptions import ConfigurationError, InvalidMarketInput
from .abi import UNISWAP_WETH_SIGNATURE, encode_function_call, hex_to_bytes
from .addresses import WETH_ADDRESS
from .optimizer import CrossedMarketDetails

INITIAL_GAS_LIMIT = 1_000_000
DEFAULT_MINER_REWARD_PERCENTAGE = 80


@dataclass(frozen=True)
class TradeInstructionBundle:
    """
    Ordered calls the executor contract performs atomically.

    Attributes:
        targets: Contract addressed by each call, in execution order
        payloads: Calldata for each call, aligned with ``targets``
        volume: Base asset sent to the first market
        miner_reward: Base asset paid to the block producer on success
        token_address: Token traded through the two markets
        profit: Expected profit of the round trip
    """

    targets: Tuple[str, ...]
    payloads: Tuple[str, ...]
    volume: int
    miner_reward: int
    token_address: str
    profit: int

    def __post_init__(self):
        if len(self.targets) != len(self.payloads):
            raise InvalidMarketInput(
                f"Bundle has {len(self.targets)} targets but {len(self.payloads)} payloads"
            )
        if not self.targets:
            raise InvalidMarketInput("Bundle has no calls")


def miner_reward_for(profit: int, reward_percentage: int) -> int:
    if not 0 <= reward_percentage <= 100:
        raise ConfigurationError(
            f"Miner reward percentage must be within 0-100, got {reward_percentage}"
        )
    return profit * reward_percentage // 100


def build_bundle(
    crossed_market: CrossedMarketDetails,
    executor_address: str,
    reward_percentage: int = DEFAULT_MINER_REWARD_PERCENTAGE,
    base_token: str = WETH_ADDRESS,
) -> TradeInstructionBundle:
    """
    Build the buy-then-sell call sequence for a crossed market.

    The buying market sends its output straight to the selling market, which
    then pays the base asset back to the executor.
    """
    buy_from = crossed_market.buy_from_market
    sell_to = crossed_market.sell_to_market
    token_address = crossed_market.token_address
    volume = crossed_market.volume

    buy_calls = buy_from.sell_tokens_to_next_market(base_token, volume, sell_to)
    inter = buy_from.get_tokens_out(base_token, token_address, volume)
    sell_call_data = sell_to.sell_tokens(token_address, inter, executor_address)

    targets = [*buy_calls.targets, sell_to.market_address]
    payloads = [*buy_calls.data, sell_call_data]

    return TradeInstructionBundle(
        targets=tuple(targets),
        payloads=tuple(payloads),
        volume=volume,
        miner_reward=miner_reward_for(crossed_market.profit, reward_percentage),
        token_address=token_address,
        profit=crossed_market.profit,
    )


def build_executor_transaction(
    bundle: TradeInstructionBundle,
    executor_address: str,
    sender: str,
    gas: int = INITIAL_GAS_LIMIT,
) -> Dict[str, Any]:
    """Unsigned call of ``uniswapWeth`` on the executor contract."""
    data = encode_function_call(
        UNISWAP_WETH_SIGNATURE,
        [
            bundle.volume,
            bundle.miner_reward,
            [Web3.to_checksum_address(t) for t in bundle.targets],
            [hex_to_bytes(p) for p in bundle.payloads],
        ],
    )
    return {
        "from": Web3.to_checksum_address(sender),
        "to": Web3.to_checksum_address(executor_address),
        "data": data,
        "value": 0,
        "gas": gas,
    }
