"""
Common utilities and helper functions for the arbitrage engine.

Wei/ether conversion, relay key generation and timing helpers.
"""

import logging
from decimal import Decimal
from typing import Union

from eth_account import Account
from web3 import Web3

ETHER = 10**18
GWEI = 10**9


# Unit utilities
def format_ether(value: int, decimals: int = 18) -> str:
    """
    Render an integer amount of base units as a decimal string.

    Args:
        value: Amount in the smallest unit (wei for ether)
        decimals: Number of decimals of the unit

    Returns:
        Decimal string, e.g. ``format_ether(15 * 10**17) == "1.5"``
    """
    amount = Decimal(int(value)).scaleb(-decimals)
    text = format(amount.normalize(), "f")
    return text


def to_wei(amount: Union[int, str, Decimal], decimals: int = 18) -> int:
    """Convert a human amount (e.g. ``"0.01"``) to integer base units."""
    return int(Decimal(str(amount)).scaleb(decimals))


def get_default_relay_signing_key() -> str:
    """Generate a throwaway key used only to identify us to the relay."""
    logger = logging.getLogger(__name__)
    logger.warning(
        "No relay signing key configured, generating a random one for this session"
    )
    return Web3.to_hex(Account.create().key)


# Timing utilities
def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
