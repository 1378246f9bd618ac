"""
Trade size search over crossed markets.

For each token the optimizer walks a fixed ladder of base-asset volumes
through every crossed (sell_to, buy_from) pair, keeping a single best record
per token. Once profit starts falling it tries the midpoint between the
current size and the best size so far and stops walking that pair.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ..utils import ETHER, format_ether
from .addresses import WETH_ADDRESS
from .market import EthMarket
from .market_index import MarketsByToken
from .scanner import CrossedPair, find_crossed_markets

logger = logging.getLogger(__name__)

TEST_VOLUMES = [
    ETHER // 100,
    ETHER // 10,
    ETHER // 6,
    ETHER // 4,
    ETHER // 2,
    ETHER // 1,
    ETHER * 2,
    ETHER * 5,
    ETHER * 10,
]

DEFAULT_MIN_PROFIT = ETHER // 1000

SEARCH_LADDER = "ladder"
SEARCH_TERNARY = "ternary"


@dataclass(frozen=True)
class CrossedMarketDetails:
    """Best trade found for one token."""

    profit: int
    volume: int
    token_address: str
    buy_from_market: EthMarket
    sell_to_market: EthMarket


def round_trip_profit(
    sell_to: EthMarket,
    buy_from: EthMarket,
    token_address: str,
    volume: int,
    base_token: str = WETH_ADDRESS,
) -> int:
    """Base asset back from selling what ``volume`` buys, minus ``volume``. May be negative."""
    tokens_out_from_buying_size = buy_from.get_tokens_out(base_token, token_address, volume)
    if tokens_out_from_buying_size == 0:
        # Pool too thin to return any tokens for this volume
        return -volume
    proceeds_from_selling_tokens = sell_to.get_tokens_out(
        token_address, base_token, tokens_out_from_buying_size
    )
    return proceeds_from_selling_tokens - volume


def _ladder_search(
    crossed_markets: Sequence[CrossedPair],
    token_address: str,
    base_token: str,
) -> Optional[CrossedMarketDetails]:
    best: Optional[CrossedMarketDetails] = None
    for crossed in crossed_markets:
        sell_to, buy_from = crossed.sell_to, crossed.buy_from
        for size in TEST_VOLUMES:
            profit = round_trip_profit(sell_to, buy_from, token_address, size, base_token)
            if best is not None and profit < best.profit:
                try_size = (size + best.volume) // 2
                try_profit = round_trip_profit(
                    sell_to, buy_from, token_address, try_size, base_token
                )
                if try_profit > best.profit:
                    best = CrossedMarketDetails(
                        try_profit, try_size, token_address, buy_from, sell_to
                    )
                break
            best = CrossedMarketDetails(profit, size, token_address, buy_from, sell_to)
    return best


def _ternary_search(
    crossed_markets: Sequence[CrossedPair],
    token_address: str,
    base_token: str,
    low: int = TEST_VOLUMES[0],
    high: int = TEST_VOLUMES[-1],
    tolerance: int = ETHER // 1000,
) -> Optional[CrossedMarketDetails]:
    """Integer ternary search for the peak of the (concave) profit curve of each pair."""
    best: Optional[CrossedMarketDetails] = None
    for crossed in crossed_markets:
        sell_to, buy_from = crossed.sell_to, crossed.buy_from

        def profit_at(volume: int) -> int:
            return round_trip_profit(sell_to, buy_from, token_address, volume, base_token)

        lo, hi = low, high
        while hi - lo > tolerance:
            third = (hi - lo) // 3
            m1, m2 = lo + third, hi - third
            if profit_at(m1) < profit_at(m2):
                lo = m1 + 1
            else:
                hi = m2 - 1
        volume = (lo + hi) // 2
        profit = profit_at(volume)
        if best is None or profit > best.profit:
            best = CrossedMarketDetails(profit, volume, token_address, buy_from, sell_to)
    return best


SEARCH_STRATEGIES: Dict[
    str, Callable[[Sequence[CrossedPair], str, str], Optional[CrossedMarketDetails]]
] = {
    SEARCH_LADDER: _ladder_search,
    SEARCH_TERNARY: _ternary_search,
}


def get_best_crossed_market(
    crossed_markets: Sequence[CrossedPair],
    token_address: str,
    base_token: str = WETH_ADDRESS,
    search: str = SEARCH_LADDER,
) -> Optional[CrossedMarketDetails]:
    """
    Most profitable (volume, pair) for a token, or None without crossed pairs.

    Args:
        crossed_markets: Output of find_crossed_markets for this token
        token_address: The non-base token
        base_token: Asset profit is measured in
        search: "ladder" or "ternary"
    """
    try:
        strategy = SEARCH_STRATEGIES[search]
    except KeyError:
        raise ValueError(
            f"Unknown search strategy {search!r}, expected one of {sorted(SEARCH_STRATEGIES)}"
        ) from None
    if not crossed_markets:
        return None
    return strategy(crossed_markets, token_address, base_token)


def evaluate_markets(
    markets_by_token: MarketsByToken,
    min_profit: int = DEFAULT_MIN_PROFIT,
    base_token: str = WETH_ADDRESS,
    search: str = SEARCH_LADDER,
) -> List[CrossedMarketDetails]:
    """Best opportunity per token above ``min_profit``, most profitable first."""
    best_crossed_markets: List[CrossedMarketDetails] = []

    for token_address, markets in markets_by_token.items():
        crossed_markets = find_crossed_markets(markets, token_address, base_token)
        if not crossed_markets:
            continue
        logger.debug(f"{token_address}: {len(crossed_markets)} crossed market pairs")

        best = get_best_crossed_market(crossed_markets, token_address, base_token, search)
        if best is not None and best.profit > min_profit:
            best_crossed_markets.append(best)

    # Stable: equal profits keep token iteration order
    best_crossed_markets.sort(key=lambda m: m.profit, reverse=True)
    return best_crossed_markets


def print_crossed_market(crossed_market: CrossedMarketDetails) -> str:
    """Human-readable summary of a crossed market; also logged at INFO."""
    buy_tokens = crossed_market.buy_from_market.tokens
    sell_tokens = crossed_market.sell_to_market.tokens
    summary = (
        f"Profit: {format_ether(crossed_market.profit)} "
        f"Volume: {format_ether(crossed_market.volume)}\n"
        f"{crossed_market.buy_from_market.protocol} "
        f"({crossed_market.buy_from_market.market_address})\n"
        f"  {buy_tokens[0]} => {buy_tokens[1]}\n"
        f"{crossed_market.sell_to_market.protocol} "
        f"({crossed_market.sell_to_market.market_address})\n"
        f"  {sell_tokens[0]} => {sell_tokens[1]}\n"
    )
    logger.info(summary)
    return summary


def log_opportunity(rank: int, crossed_market: CrossedMarketDetails) -> Dict[str, object]:
    """Emit the structured OPPORTUNITY_FOUND record for one opportunity."""
    log_data = {
        "rank": rank,
        "token": crossed_market.token_address,
        "buy_from": crossed_market.buy_from_market.market_address,
        "buy_protocol": crossed_market.buy_from_market.protocol,
        "sell_to": crossed_market.sell_to_market.market_address,
        "sell_protocol": crossed_market.sell_to_market.protocol,
        "volume_eth": format_ether(crossed_market.volume),
        "profit_eth": format_ether(crossed_market.profit),
        "profit_wei": crossed_market.profit,
    }
    logger.info(f"OPPORTUNITY_FOUND: {log_data}")
    return log_data
