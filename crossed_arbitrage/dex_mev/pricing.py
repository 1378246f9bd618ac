"""
Constant-product (x*y=k) pricing with an on-chain fee, in integer arithmetic.

These functions reproduce UniswapV2Library.getAmountOut / getAmountIn
bit-for-bit. Python ints never overflow, and ``//`` on non-negative operands
is the same truncating division the EVM performs, so no intermediate
precision is lost.

    amountInWithFee = amountIn * 997
    amountOut = amountInWithFee * reserveOut / (reserveIn * 1000 + amountInWithFee)

    amountIn = reserveIn * amountOut * 1000 / ((reserveOut - amountOut) * 997) + 1
"""

from dataclasses import dataclass
from math import gcd

from ..exceptions import ArithmeticInfeasible, InvalidMarketInput


@dataclass(frozen=True)
class FeeSchedule:
    """
    Swap fee expressed as the integer multiplier applied to the input amount.

    Attributes:
        numerator: Share of the input that is swapped (997 for 0.3%)
        denominator: Scale of the multiplier (1000 for Uniswap V2)
    """

    numerator: int
    denominator: int

    def __post_init__(self):
        if self.denominator <= 0 or not 0 < self.numerator <= self.denominator:
            raise InvalidMarketInput(
                f"Invalid fee schedule {self.numerator}/{self.denominator}"
            )

    @classmethod
    def from_bps(cls, fee_bps: int) -> "FeeSchedule":
        """Build a reduced schedule from basis points (30 -> 997/1000)."""
        if not 0 <= fee_bps < 10000:
            raise InvalidMarketInput(f"fee_bps must be in [0, 10000): {fee_bps}")
        divisor = gcd(10000 - fee_bps, 10000)
        return cls((10000 - fee_bps) // divisor, 10000 // divisor)

    @property
    def fee_bps(self) -> float:
        return (self.denominator - self.numerator) * 10000 / self.denominator


UNISWAP_V2_FEE = FeeSchedule(997, 1000)


def _require_int(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidMarketInput(f"{name} must be an integer, got {type(value).__name__}")


def _require_reserve(name: str, value: int) -> None:
    _require_int(name, value)
    if value < 0:
        raise InvalidMarketInput(f"Invalid reserve for {name}: {value}")


def _require_amount(name: str, value: int) -> None:
    _require_int(name, value)
    if value <= 0:
        raise InvalidMarketInput(f"Invalid amount for {name}: {value}")


def get_amount_out(
    reserve_in: int,
    reserve_out: int,
    amount_in: int,
    fee: FeeSchedule = UNISWAP_V2_FEE,
) -> int:
    """
    Output received for an exact input.

    Args:
        reserve_in: Pool reserve of the token being sold
        reserve_out: Pool reserve of the token being bought
        amount_in: Exact amount sold into the pool
        fee: Pool fee schedule

    Returns:
        Amount of the output token, rounded down

    Raises:
        InvalidMarketInput: If a reserve is negative, the amount is not
            positive, or any argument is not an integer
    """
    _require_reserve("reserve_in", reserve_in)
    _require_reserve("reserve_out", reserve_out)
    _require_amount("amount_in", amount_in)

    amount_in_with_fee = amount_in * fee.numerator
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * fee.denominator + amount_in_with_fee
    return numerator // denominator


def get_amount_in(
    reserve_in: int,
    reserve_out: int,
    amount_out: int,
    fee: FeeSchedule = UNISWAP_V2_FEE,
) -> int:
    """
    Input required for an exact output, rounded up so the pool invariant holds.

    Args:
        reserve_in: Pool reserve of the token being sold
        reserve_out: Pool reserve of the token being bought
        amount_out: Exact amount wanted out of the pool
        fee: Pool fee schedule

    Returns:
        Amount of the input token the caller must pay

    Raises:
        InvalidMarketInput: If a reserve is negative, the amount is not
            positive, or any argument is not an integer
        ArithmeticInfeasible: If ``amount_out >= reserve_out``
    """
    _require_reserve("reserve_in", reserve_in)
    _require_reserve("reserve_out", reserve_out)
    _require_amount("amount_out", amount_out)

    if amount_out >= reserve_out:
        raise ArithmeticInfeasible(
            f"Requested output {amount_out} meets or exceeds reserve {reserve_out}",
            reserve_out=reserve_out,
            amount_out=amount_out,
        )

    numerator = reserve_in * amount_out * fee.denominator
    denominator = (reserve_out - amount_out) * fee.numerator
    return numerator // denominator + 1
