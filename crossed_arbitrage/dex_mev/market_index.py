"""
Market discovery, grouping by token and per-cycle reserve snapshots.

Pairs are enumerated once at start-up through the UniswapFlashQuery lookup
contract. Every cycle the reserves of all known pairs are fetched in one
batched call and applied as a single versioned ReserveSnapshot, so a scan
never mixes reserves from two different refreshes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from web3 import Web3

from ..exceptions import DataError
from ..utils import ETHER
from .abi import UNISWAP_QUERY_ABI
from .addresses import BLACKLIST_TOKENS, UNISWAP_LOOKUP_CONTRACT_ADDRESS, WETH_ADDRESS
from .market import EthMarket, UniswappyV2EthPair
from .pricing import UNISWAP_V2_FEE, FeeSchedule

logger = logging.getLogger(__name__)

MarketsByToken = Dict[str, List[EthMarket]]

# Upper bound on discovery batches per factory
BATCH_COUNT_LIMIT = 100
UNISWAP_BATCH_SIZE = 1000


@runtime_checkable
class MarketDirectory(Protocol):
    """Source of (token0, token1, pair) triples, enumerable by index range."""

    def get_pairs_by_index_range(
        self, factory_address: str, start: int, stop: int
    ) -> List[Tuple[str, str, str]]:
        ...


@runtime_checkable
class ReserveSource(Protocol):
    """Batched reserve lookup; rows are returned in the order of the input."""

    def get_reserves_by_pairs(self, pair_addresses: Sequence[str]) -> List[Sequence[int]]:
        ...


class UniswapQueryClient:
    """web3 binding of the UniswapFlashQuery lookup contract."""

    def __init__(self, w3: Web3, lookup_address: str = UNISWAP_LOOKUP_CONTRACT_ADDRESS):
        self.w3 = w3
        self.contract = w3.eth.contract(
            address=Web3.to_checksum_address(lookup_address), abi=UNISWAP_QUERY_ABI
        )

    def get_pairs_by_index_range(
        self, factory_address: str, start: int, stop: int
    ) -> List[Tuple[str, str, str]]:
        rows = self.contract.functions.getPairsByIndexRange(
            Web3.to_checksum_address(factory_address), start, stop
        ).call()
        return [(row[0], row[1], row[2]) for row in rows]

    def get_reserves_by_pairs(self, pair_addresses: Sequence[str]) -> List[Sequence[int]]:
        return self.contract.functions.getReservesByPairs(
            [Web3.to_checksum_address(a) for a in pair_addresses]
        ).call()


@dataclass(frozen=True)
class FactoryInfo:
    """A pair factory to enumerate, with the fee its pairs charge."""

    address: str
    name: str = ""
    fee: FeeSchedule = UNISWAP_V2_FEE


@dataclass(frozen=True)
class ReserveSnapshot:
    """
    Reserves of every known market at one point in time.

    Attributes:
        version: Monotonic refresh counter
        block_number: Block the refresh was triggered for
        reserves: market address -> (reserve0, reserve1) in token order
        taken_at: Unix timestamp of the refresh
    """

    version: int
    block_number: Optional[int]
    reserves: Mapping[str, Tuple[int, int]]
    taken_at: float = field(default_factory=time.time)


def token_of(market: EthMarket, base_token: str = WETH_ADDRESS) -> str:
    """The non-base token a base-asset market trades."""
    return market.tokens[1] if market.tokens[0] == base_token else market.tokens[0]


def group_markets_by_token(
    markets: Iterable[EthMarket], base_token: str = WETH_ADDRESS
) -> MarketsByToken:
    grouped: MarketsByToken = {}
    for market in markets:
        grouped.setdefault(token_of(market, base_token), []).append(market)
    return grouped


def build_markets_by_token(
    markets: Iterable[EthMarket],
    min_liquidity: int = ETHER,
    base_token: str = WETH_ADDRESS,
) -> MarketsByToken:
    """Group markets whose base-token reserve is above the liquidity floor."""
    liquid = [m for m in markets if m.get_balance(base_token) > min_liquidity]
    return group_markets_by_token(liquid, base_token)


def build_snapshot(
    markets: Sequence[EthMarket],
    rows: Sequence[Sequence[int]],
    version: int,
    block_number: Optional[int] = None,
) -> ReserveSnapshot:
    """
    Validate a batched reserve response against the request order.

    Raises:
        DataError: If the response is not aligned with ``markets``
    """
    if len(rows) != len(markets):
        raise DataError(
            f"Reserve batch returned {len(rows)} rows for {len(markets)} markets",
            source="getReservesByPairs",
        )
    reserves: Dict[str, Tuple[int, int]] = {}
    for market, row in zip(markets, rows):
        if len(row) < 2:
            raise DataError(
                f"Malformed reserve row for {market.market_address}: {list(row)}",
                source="getReservesByPairs",
            )
        reserve0, reserve1 = int(row[0]), int(row[1])
        if reserve0 < 0 or reserve1 < 0:
            raise DataError(
                f"Negative reserve for {market.market_address}: {list(row)}",
                source="getReservesByPairs",
            )
        reserves[market.market_address] = (reserve0, reserve1)
    return ReserveSnapshot(version=version, block_number=block_number, reserves=reserves)


class MarketIndex:
    """
    All known markets plus the per-cycle grouping by token.

    Reserves are only written through apply_snapshot(), which runs without
    awaiting, so no coroutine can observe a partially applied refresh.
    """

    def __init__(
        self,
        all_market_pairs: Sequence[EthMarket],
        reserve_source: ReserveSource,
        min_liquidity: int = ETHER,
        base_token: str = WETH_ADDRESS,
    ):
        self.all_market_pairs: List[EthMarket] = list(all_market_pairs)
        self.reserve_source = reserve_source
        self.min_liquidity = min_liquidity
        self.base_token = base_token
        self.markets_by_token: MarketsByToken = {}
        self.snapshot: Optional[ReserveSnapshot] = None
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    async def refresh(self, block_number: Optional[int] = None) -> ReserveSnapshot:
        """Fetch all reserves in one batch and apply them as one snapshot."""
        pair_addresses = [m.market_address for m in self.all_market_pairs]
        logger.info(f"Updating markets, count: {len(pair_addresses)}")

        loop = asyncio.get_event_loop()
        rows = await loop.run_in_executor(
            None, self.reserve_source.get_reserves_by_pairs, pair_addresses
        )

        snapshot = build_snapshot(
            self.all_market_pairs, rows, self._version + 1, block_number
        )
        self.apply_snapshot(snapshot)
        return snapshot

    def apply_snapshot(self, snapshot: ReserveSnapshot) -> None:
        if snapshot.version <= self._version:
            raise DataError(
                f"Stale snapshot version {snapshot.version} (current {self._version})"
            )
        missing = [
            m.market_address
            for m in self.all_market_pairs
            if m.market_address not in snapshot.reserves
        ]
        if missing:
            raise DataError(f"Snapshot is missing {len(missing)} markets")

        for market in self.all_market_pairs:
            market.set_reserves_via_ordered_balances(
                snapshot.reserves[market.market_address], snapshot.version
            )
        self._version = snapshot.version
        self.snapshot = snapshot
        self.markets_by_token = build_markets_by_token(
            self.all_market_pairs, self.min_liquidity, self.base_token
        )


async def get_uniswappy_markets(
    directory: MarketDirectory,
    factory: FactoryInfo,
    base_token: str = WETH_ADDRESS,
    batch_size: int = UNISWAP_BATCH_SIZE,
    batch_count_limit: int = BATCH_COUNT_LIMIT,
    blacklist: Sequence[str] = BLACKLIST_TOKENS,
) -> List[UniswappyV2EthPair]:
    """Enumerate one factory's pairs that trade against the base token."""
    loop = asyncio.get_event_loop()
    blacklisted = {t.lower() for t in blacklist}
    market_pairs: List[UniswappyV2EthPair] = []

    for start in range(0, batch_count_limit * batch_size, batch_size):
        pairs = await loop.run_in_executor(
            None,
            directory.get_pairs_by_index_range,
            factory.address,
            start,
            start + batch_size,
        )
        for token0, token1, market_address in pairs:
            if token0 == base_token:
                token_address = token1
            elif token1 == base_token:
                token_address = token0
            else:
                continue
            if token_address.lower() in blacklisted:
                continue
            market_pairs.append(
                UniswappyV2EthPair(
                    market_address, [token0, token1], factory.name, factory.fee
                )
            )
        if len(pairs) < batch_size:
            break

    logger.info(
        f"Factory {factory.name or factory.address}: {len(market_pairs)} base-asset pairs"
    )
    return market_pairs


async def get_uniswap_markets_by_token(
    directory: MarketDirectory,
    reserve_source: ReserveSource,
    factories: Sequence[FactoryInfo],
    min_liquidity: int = ETHER,
    base_token: str = WETH_ADDRESS,
    batch_size: int = UNISWAP_BATCH_SIZE,
    batch_count_limit: int = BATCH_COUNT_LIMIT,
    blacklist: Sequence[str] = BLACKLIST_TOKENS,
) -> MarketIndex:
    """
    Discover markets across factories and build the initial index.

    Only tokens listed on more than one market can ever cross, so the rest
    are dropped before the first reserve refresh.
    """
    all_pairs = await asyncio.gather(
        *[
            get_uniswappy_markets(
                directory, factory, base_token, batch_size, batch_count_limit, blacklist
            )
            for factory in factories
        ]
    )
    markets_by_token_all = group_markets_by_token(
        (pair for pairs in all_pairs for pair in pairs), base_token
    )
    all_market_pairs = [
        market
        for markets in markets_by_token_all.values()
        if len(markets) > 1
        for market in markets
    ]

    index = MarketIndex(all_market_pairs, reserve_source, min_liquidity, base_token)
    await index.refresh()
    logger.info(
        f"Discovered {len(all_market_pairs)} markets, "
        f"{len(index.markets_by_token)} tokens above liquidity floor"
    )
    return index
