"""
Test crossed-market scanning and trade size optimization.
"""

import logging

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from web3 import Web3

from crossed_arbitrage.dex_mev.addresses import WETH_ADDRESS
from crossed_arbitrage.dex_mev.market import UniswappyV2EthPair
from crossed_arbitrage.dex_mev.optimizer import (
    SEARCH_TERNARY,
    TEST_VOLUMES,
    CrossedMarketDetails,
    evaluate_markets,
    get_best_crossed_market,
    log_opportunity,
    print_crossed_market,
    round_trip_profit,
)
from crossed_arbitrage.dex_mev.scanner import PROBE_AMOUNT, find_crossed_markets, price_markets
from crossed_arbitrage.utils import ETHER

TOKEN_X = Web3.to_checksum_address("0x" + "11" * 20)
TOKEN_Y = Web3.to_checksum_address("0x" + "22" * 20)


def make_market(index: int, token: str, weth_reserve: int, token_reserve: int, protocol="test"):
    address = Web3.to_checksum_address("0x" + f"{index:040x}")
    market = UniswappyV2EthPair(address, [WETH_ADDRESS, token], protocol)
    market.set_reserves_via_ordered_balances([weth_reserve, token_reserve], version=1)
    return market


@pytest.fixture
def scenario():
    """Market A prices X at 1 WETH, market B at 1.25 WETH."""
    market_a = make_market(1, TOKEN_X, 100 * ETHER, 100 * ETHER, "A")
    market_b = make_market(2, TOKEN_X, 100 * ETHER, 80 * ETHER, "B")
    return market_a, market_b


class TestScanner:
    def test_scenario_flags_sell_to_b_buy_from_a(self, scenario):
        market_a, market_b = scenario
        crossed = find_crossed_markets([market_a, market_b], TOKEN_X)
        assert len(crossed) == 1
        assert crossed[0].sell_to is market_b
        assert crossed[0].buy_from is market_a

    def test_identical_reserves_never_cross(self):
        markets = [make_market(i, TOKEN_X, 100 * ETHER, 100 * ETHER) for i in range(1, 4)]
        assert find_crossed_markets(markets, TOKEN_X) == []

    def test_market_listed_twice_is_not_paired_with_itself(self, scenario):
        market_a, market_b = scenario
        crossed = find_crossed_markets([market_a, market_a, market_b], TOKEN_X)
        for pair in crossed:
            assert pair.sell_to is not pair.buy_from

    def test_market_too_thin_for_probe_is_skipped(self, scenario):
        market_a, market_b = scenario
        thin = make_market(3, TOKEN_X, PROBE_AMOUNT // 2, ETHER)
        priced = price_markets([market_a, thin, market_b], TOKEN_X)
        assert [p.market for p in priced] == [market_a, market_b]

    @settings(max_examples=50, deadline=None)
    @given(
        reserves=st.lists(
            st.tuples(
                st.integers(min_value=ETHER, max_value=10**24),
                st.integers(min_value=ETHER, max_value=10**24),
            ),
            min_size=2,
            max_size=5,
        )
    )
    def test_never_emits_self_pairs(self, reserves):
        markets = [make_market(i + 1, TOKEN_X, w, t) for i, (w, t) in enumerate(reserves)]
        for pair in find_crossed_markets(markets, TOKEN_X):
            assert pair.sell_to is not pair.buy_from
            assert pair.sell_to.market_address != pair.buy_from.market_address


class TestOptimizer:
    def test_scenario_best_volume(self, scenario):
        market_a, market_b = scenario
        crossed = find_crossed_markets([market_a, market_b], TOKEN_X)
        best = get_best_crossed_market(crossed, TOKEN_X)

        assert best.volume == 5 * ETHER
        assert best.profit == round_trip_profit(market_b, market_a, TOKEN_X, 5 * ETHER)
        assert best.profit > ETHER // 2
        assert best.buy_from_market is market_a
        assert best.sell_to_market is market_b
        assert TEST_VOLUMES[0] <= best.volume <= TEST_VOLUMES[-1]

    def test_midpoint_is_adopted_when_better(self):
        # Peak sits near 3.2 ETH, so the 3.5 ETH midpoint beats both rungs
        market_a = make_market(1, TOKEN_X, 100 * ETHER, 100 * ETHER)
        market_b = make_market(2, TOKEN_X, 100 * ETHER, 87 * ETHER)
        crossed = find_crossed_markets([market_a, market_b], TOKEN_X)
        best = get_best_crossed_market(crossed, TOKEN_X)

        profit_2 = round_trip_profit(market_b, market_a, TOKEN_X, 2 * ETHER)
        profit_5 = round_trip_profit(market_b, market_a, TOKEN_X, 5 * ETHER)
        profit_mid = round_trip_profit(market_b, market_a, TOKEN_X, 7 * ETHER // 2)
        assert profit_5 < profit_2 < profit_mid
        assert best.volume == 7 * ETHER // 2
        assert best.profit == profit_mid

    def test_thin_pool_loses_whole_volume(self, scenario):
        _, market_b = scenario
        thin = make_market(3, TOKEN_X, 10**30, 1)
        assert thin.get_tokens_out(WETH_ADDRESS, TOKEN_X, ETHER) == 0
        assert round_trip_profit(market_b, thin, TOKEN_X, ETHER) == -ETHER

    def test_no_crossed_markets(self):
        assert get_best_crossed_market([], TOKEN_X) is None

    def test_unknown_search_strategy(self, scenario):
        crossed = find_crossed_markets(list(scenario), TOKEN_X)
        with pytest.raises(ValueError):
            get_best_crossed_market(crossed, TOKEN_X, search="grid")

    def test_ternary_search_at_least_as_good_as_ladder(self, scenario):
        crossed = find_crossed_markets(list(scenario), TOKEN_X)
        ladder = get_best_crossed_market(crossed, TOKEN_X)
        ternary = get_best_crossed_market(crossed, TOKEN_X, search=SEARCH_TERNARY)
        assert ternary.profit >= ladder.profit
        assert TEST_VOLUMES[0] <= ternary.volume <= TEST_VOLUMES[-1]


class TestEvaluateMarkets:
    def test_sorted_by_profit_descending(self, scenario):
        market_y1 = make_market(3, TOKEN_Y, 100 * ETHER, 100 * ETHER)
        market_y2 = make_market(4, TOKEN_Y, 100 * ETHER, 95 * ETHER)
        markets_by_token = {TOKEN_Y: [market_y1, market_y2], TOKEN_X: list(scenario)}

        best = evaluate_markets(markets_by_token)

        assert [b.token_address for b in best] == [TOKEN_X, TOKEN_Y]
        assert best[0].profit >= best[1].profit

    def test_identical_reserves_give_empty_list(self):
        markets = [make_market(i, TOKEN_X, 100 * ETHER, 100 * ETHER) for i in (1, 2)]
        assert evaluate_markets({TOKEN_X: markets}) == []

    def test_profit_threshold_is_strict(self, scenario):
        best = evaluate_markets({TOKEN_X: list(scenario)})[0]
        assert evaluate_markets({TOKEN_X: list(scenario)}, min_profit=best.profit) == []
        assert len(evaluate_markets({TOKEN_X: list(scenario)}, min_profit=best.profit - 1)) == 1

    def test_ties_keep_token_order(self):
        markets_by_token = {}
        for offset, token in enumerate((TOKEN_Y, TOKEN_X)):
            markets_by_token[token] = [
                make_market(10 + 2 * offset, token, 100 * ETHER, 100 * ETHER),
                make_market(11 + 2 * offset, token, 100 * ETHER, 80 * ETHER),
            ]
        best = evaluate_markets(markets_by_token)
        assert best[0].profit == best[1].profit
        assert [b.token_address for b in best] == [TOKEN_Y, TOKEN_X]

    @settings(max_examples=30, deadline=None)
    @given(
        token_reserves=st.lists(
            st.integers(min_value=50 * ETHER, max_value=150 * ETHER), min_size=2, max_size=4
        )
    )
    def test_results_above_threshold_and_sorted(self, token_reserves):
        markets = [
            make_market(i + 1, TOKEN_X, 100 * ETHER, r) for i, r in enumerate(token_reserves)
        ]
        best = evaluate_markets({TOKEN_X: markets})
        assert all(b.profit > ETHER // 1000 for b in best)
        assert all(a.profit >= b.profit for a, b in zip(best, best[1:]))


class TestReporting:
    def test_print_crossed_market(self, scenario, caplog):
        market_a, market_b = scenario
        details = CrossedMarketDetails(
            profit=ETHER // 2,
            volume=5 * ETHER,
            token_address=TOKEN_X,
            buy_from_market=market_a,
            sell_to_market=market_b,
        )
        with caplog.at_level(logging.INFO):
            summary = print_crossed_market(details)
        assert summary.startswith("Profit: 0.5 Volume: 5\n")
        assert f"A ({market_a.market_address})" in summary
        assert f"  {WETH_ADDRESS} => {TOKEN_X}" in summary
        assert "Profit: 0.5" in caplog.text

    def test_log_opportunity(self, scenario, caplog):
        market_a, market_b = scenario
        details = CrossedMarketDetails(ETHER, ETHER, TOKEN_X, market_a, market_b)
        with caplog.at_level(logging.INFO):
            log_data = log_opportunity(1, details)
        assert log_data["profit_eth"] == "1"
        assert "OPPORTUNITY_FOUND" in caplog.text
