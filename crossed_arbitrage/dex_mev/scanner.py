"""
Crossed-market detection for a single token.

Every market of a token is priced with a small probe of the base asset. A
pair is crossed when one market pays more base asset for the token than
another charges for it.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence

from ..exceptions import ArithmeticInfeasible
from ..utils import ETHER
from .addresses import WETH_ADDRESS
from .market import EthMarket

logger = logging.getLogger(__name__)

PROBE_AMOUNT = ETHER // 100


@dataclass(frozen=True)
class PricedMarket:
    """Probe quotes for one market, both denominated in the token."""

    market: EthMarket
    buy_token_price: int  # token paid to receive the probe of base asset
    sell_token_price: int  # token received for the probe of base asset


@dataclass(frozen=True)
class CrossedPair:
    sell_to: EthMarket
    buy_from: EthMarket


def price_markets(
    markets: Sequence[EthMarket],
    token_address: str,
    base_token: str = WETH_ADDRESS,
    probe: int = PROBE_AMOUNT,
) -> List[PricedMarket]:
    """Quote every market at the probe size; markets that cannot quote are skipped."""
    priced: List[PricedMarket] = []
    for market in markets:
        try:
            buy_token_price = market.get_tokens_in(token_address, base_token, probe)
            sell_token_price = market.get_tokens_out(base_token, token_address, probe)
        except ArithmeticInfeasible as e:
            logger.debug(f"Skipping {market.market_address} for {token_address}: {e}")
            continue
        priced.append(PricedMarket(market, buy_token_price, sell_token_price))
    return priced


def find_crossed_markets(
    markets: Sequence[EthMarket],
    token_address: str,
    base_token: str = WETH_ADDRESS,
    probe: int = PROBE_AMOUNT,
) -> List[CrossedPair]:
    """
    Ordered (sell_to, buy_from) pairs where buy_from's sell quote beats sell_to's buy quote.

    Pairs are emitted in market order, outer loop over sell_to candidates.
    """
    priced = price_markets(markets, token_address, base_token, probe)
    crossed: List[CrossedPair] = []
    for priced_market in priced:
        for pm in priced:
            if pm.market is priced_market.market:
                continue
            if pm.sell_token_price > priced_market.buy_token_price:
                crossed.append(CrossedPair(sell_to=priced_market.market, buy_from=pm.market))
    return crossed
