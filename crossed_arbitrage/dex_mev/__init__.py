"""
On-chain side of the engine: market math, discovery, opportunity search and
simulation-gated bundle submission.
"""

from .bundle import TradeInstructionBundle, build_bundle
from .engine import ArbitrageEngine
from .market import EthMarket, UniswappyV2EthPair
from .market_index import MarketIndex, ReserveSnapshot
from .optimizer import CrossedMarketDetails, evaluate_markets
from .relay import FlashbotsRelay
from .submission import SubmissionPipeline, SubmissionState

__all__ = [
    "ArbitrageEngine",
    "CrossedMarketDetails",
    "EthMarket",
    "FlashbotsRelay",
    "MarketIndex",
    "ReserveSnapshot",
    "SubmissionPipeline",
    "SubmissionState",
    "TradeInstructionBundle",
    "UniswappyV2EthPair",
    "build_bundle",
    "evaluate_markets",
]
