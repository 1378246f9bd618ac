"""
Market abstraction over two-token AMM pools.

EthMarket is the capability interface the scanner, optimizer and bundle
builder depend on; UniswappyV2EthPair is the constant-product implementation
shared by Uniswap V2 and its forks.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from ..exceptions import InvalidMarketInput
from .abi import SWAP_SIGNATURE, encode_function_call
from .pricing import UNISWAP_V2_FEE, FeeSchedule, get_amount_in, get_amount_out


TokenBalances = Dict[str, int]


@dataclass(frozen=True)
class CallDetails:
    """A single preparatory call a market needs before it can receive tokens."""

    target: str
    data: str
    value: int = 0


@dataclass
class MultipleCallData:
    """Order-aligned call targets and calldata produced by a market."""

    targets: List[str] = field(default_factory=list)
    data: List[str] = field(default_factory=list)

    def append(self, target: str, data: str) -> None:
        self.targets.append(target)
        self.data.append(data)


class EthMarket(ABC):
    """Abstract base class for a two-token market."""

    def __init__(self, market_address: str, tokens: Sequence[str], protocol: str):
        if len(tokens) != 2 or tokens[0] == tokens[1]:
            raise InvalidMarketInput(
                f"Market {market_address} needs two distinct tokens, got {list(tokens)}",
                market_address=market_address,
            )
        self._market_address = market_address
        self._tokens: Tuple[str, str] = (tokens[0], tokens[1])
        self._protocol = protocol

    @property
    def market_address(self) -> str:
        return self._market_address

    @property
    def tokens(self) -> Tuple[str, str]:
        return self._tokens

    @property
    def protocol(self) -> str:
        return self._protocol

    def other_token(self, token_address: str) -> str:
        """Return the token on the opposite side of the pool."""
        if token_address == self._tokens[0]:
            return self._tokens[1]
        if token_address == self._tokens[1]:
            return self._tokens[0]
        raise InvalidMarketInput(
            f"Market {self._market_address} does not operate on token {token_address}",
            market_address=self._market_address,
            token_address=token_address,
        )

    @abstractmethod
    def get_tokens_out(self, token_in: str, token_out: str, amount_in: int) -> int:
        """Amount of ``token_out`` received for selling ``amount_in`` of ``token_in``."""

    @abstractmethod
    def get_tokens_in(self, token_in: str, token_out: str, amount_out: int) -> int:
        """Amount of ``token_in`` required to receive ``amount_out`` of ``token_out``."""

    @abstractmethod
    def sell_tokens(self, token_in: str, amount_in: int, recipient: str) -> str:
        """Calldata for selling ``amount_in`` already sent to this market."""

    @abstractmethod
    def sell_tokens_to_next_market(
        self, token_in: str, amount_in: int, eth_market: "EthMarket"
    ) -> MultipleCallData:
        """Calls that sell here and deliver the output to ``eth_market``."""

    @abstractmethod
    def receive_directly(self, token_address: str) -> bool:
        """True if a plain transfer to this market's address counts as input."""

    @abstractmethod
    def prepare_receive(self, token_address: str, amount_in: int) -> List[CallDetails]:
        """Calls needed before this market can take ``amount_in`` of a token."""

    @abstractmethod
    def get_balance(self, token_address: str) -> int:
        """Current reserve of ``token_address``."""

    @abstractmethod
    def set_reserves_via_ordered_balances(
        self, balances: Sequence[int], version: int = 0
    ) -> None:
        """Replace both reserves at once, in on-chain token order."""

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(market_address={self._market_address!r}, "
            f"tokens={list(self._tokens)!r}, protocol={self._protocol!r})"
        )


class UniswappyV2EthPair(EthMarket):
    """Uniswap V2 style constant-product pair."""

    def __init__(
        self,
        market_address: str,
        tokens: Sequence[str],
        protocol: str = "",
        fee: FeeSchedule = UNISWAP_V2_FEE,
    ):
        super().__init__(market_address, tokens, protocol)
        self.fee = fee
        self._token_balances: TokenBalances = {self._tokens[0]: 0, self._tokens[1]: 0}
        self.snapshot_version = 0

    def receive_directly(self, token_address: str) -> bool:
        return token_address in self._token_balances

    def prepare_receive(self, token_address: str, amount_in: int) -> List[CallDetails]:
        if token_address not in self._token_balances:
            raise InvalidMarketInput(
                f"Market does not operate on token {token_address}",
                market_address=self.market_address,
                token_address=token_address,
            )
        self._require_positive(token_address, amount_in)
        # No preparation necessary
        return []

    def get_balance(self, token_address: str) -> int:
        balance = self._token_balances.get(token_address)
        if balance is None:
            raise InvalidMarketInput(
                f"Market {self.market_address} has no balance for {token_address}",
                market_address=self.market_address,
                token_address=token_address,
            )
        return balance

    def set_reserves_via_ordered_balances(
        self, balances: Sequence[int], version: int = 0
    ) -> None:
        self.set_reserves_via_matching_array(self._tokens, balances, version)

    def set_reserves_via_matching_array(
        self, tokens: Sequence[str], balances: Sequence[int], version: int = 0
    ) -> None:
        if len(tokens) != 2 or len(balances) != 2:
            raise InvalidMarketInput(
                f"Expected two tokens and two balances, got {len(tokens)}/{len(balances)}",
                market_address=self.market_address,
            )
        if set(tokens) != set(self._tokens):
            raise InvalidMarketInput(
                f"Tokens {list(tokens)} do not match market tokens {list(self._tokens)}",
                market_address=self.market_address,
            )
        token_balances = {}
        for token, balance in zip(tokens, balances):
            balance = int(balance)
            if balance < 0:
                raise InvalidMarketInput(
                    f"Negative reserve {balance} for {token}",
                    market_address=self.market_address,
                    token_address=token,
                )
            token_balances[token] = balance

        # Swap the whole mapping in one assignment; readers never see one
        # token updated without the other.
        self._token_balances = token_balances
        self.snapshot_version = version

    def _require_positive(self, token_address: str, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidMarketInput(
                f"Invalid amount: {amount}",
                market_address=self.market_address,
                token_address=token_address,
            )

    def _reserves(self, token_in: str, token_out: str) -> Tuple[int, int]:
        if token_in == token_out:
            raise InvalidMarketInput(
                f"Cannot quote {token_in} against itself",
                market_address=self.market_address,
                token_address=token_in,
            )
        balances = self._token_balances
        return self._balance_of(balances, token_in), self._balance_of(balances, token_out)

    def _balance_of(self, balances: TokenBalances, token_address: str) -> int:
        if token_address not in balances:
            raise InvalidMarketInput(
                f"Market {self.market_address} does not operate on token {token_address}",
                market_address=self.market_address,
                token_address=token_address,
            )
        return balances[token_address]

    def get_tokens_in(self, token_in: str, token_out: str, amount_out: int) -> int:
        self._require_positive(token_out, amount_out)
        reserve_in, reserve_out = self._reserves(token_in, token_out)
        return get_amount_in(reserve_in, reserve_out, amount_out, self.fee)

    def get_tokens_out(self, token_in: str, token_out: str, amount_in: int) -> int:
        self._require_positive(token_in, amount_in)
        reserve_in, reserve_out = self._reserves(token_in, token_out)
        return get_amount_out(reserve_in, reserve_out, amount_in, self.fee)

    def sell_tokens_to_next_market(
        self, token_in: str, amount_in: int, eth_market: EthMarket
    ) -> MultipleCallData:
        token_out = self.other_token(token_in)
        calls = MultipleCallData()

        if eth_market.receive_directly(token_out):
            calls.append(
                self.market_address,
                self.sell_tokens(token_in, amount_in, eth_market.market_address),
            )
            return calls

        # The next market cannot take a plain transfer: deliver to it anyway
        # and append whatever calls it needs to account for the input.
        amount_out = self.get_tokens_out(token_in, token_out, amount_in)
        calls.append(
            self.market_address,
            self.sell_tokens(token_in, amount_in, eth_market.market_address),
        )
        for call in eth_market.prepare_receive(token_out, amount_out):
            calls.append(call.target, call.data)
        return calls

    def sell_tokens(self, token_in: str, amount_in: int, recipient: str) -> str:
        # function swap(uint amount0Out, uint amount1Out, address to, bytes calldata data)
        self._require_positive(token_in, amount_in)
        amount0_out = 0
        amount1_out = 0
        if token_in == self.tokens[0]:
            amount1_out = self.get_tokens_out(token_in, self.tokens[1], amount_in)
        elif token_in == self.tokens[1]:
            amount0_out = self.get_tokens_out(token_in, self.tokens[0], amount_in)
        else:
            raise InvalidMarketInput(
                f"Bad token input address {token_in}",
                market_address=self.market_address,
                token_address=token_in,
            )
        return encode_function_call(
            SWAP_SIGNATURE, [amount0_out, amount1_out, recipient, b""]
        )
