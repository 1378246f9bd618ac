"""
Crossed-Market DEX Arbitrage Engine.

Watches Uniswap V2 style markets that pair tokens with WETH, detects tokens
whose price differs between two markets, sizes the round trip for maximum
profit and submits it as an atomic bundle through a private relay.
"""

from crossed_arbitrage.version import __version__

PROJECT_NAME = "crossed-arbitrage"

__all__ = ["PROJECT_NAME", "__version__"]
