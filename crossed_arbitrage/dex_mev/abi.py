"""
Minimal contract ABIs and calldata encoding.

Calldata is encoded with eth_abi directly, without a provider.
"""

from typing import Any, List, Sequence

from eth_abi import encode
from web3 import Web3

# UniswapFlashQuery lookup contract: batched pair enumeration and reserves
UNISWAP_QUERY_ABI = [
    {
        "inputs": [
            {"internalType": "contract UniswapV2Factory", "name": "_uniswapFactory", "type": "address"},
            {"internalType": "uint256", "name": "_start", "type": "uint256"},
            {"internalType": "uint256", "name": "_stop", "type": "uint256"},
        ],
        "name": "getPairsByIndexRange",
        "outputs": [{"internalType": "address[3][]", "name": "", "type": "address[3][]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "contract IUniswapV2Pair[]", "name": "_pairs", "type": "address[]"},
        ],
        "name": "getReservesByPairs",
        "outputs": [{"internalType": "uint256[3][]", "name": "", "type": "uint256[3][]"}],
        "stateMutability": "view",
        "type": "function",
    },
]

SWAP_SIGNATURE = "swap(uint256,uint256,address,bytes)"
UNISWAP_WETH_SIGNATURE = "uniswapWeth(uint256,uint256,address[],bytes[])"


def function_selector(signature: str) -> bytes:
    """First four bytes of the keccak hash of a canonical function signature."""
    return bytes(Web3.keccak(text=signature)[:4])


def signature_types(signature: str) -> List[str]:
    """Argument types of a flat (tuple-free) function signature."""
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return [t for t in inner.split(",") if t]


def encode_function_call(signature: str, args: Sequence[Any]) -> str:
    """
    Encode a contract call as 0x-prefixed calldata.

    Args:
        signature: Canonical signature, e.g. ``"swap(uint256,uint256,address,bytes)"``
        args: Positional arguments matching the signature types

    Returns:
        Hex calldata string
    """
    types = signature_types(signature)
    if len(types) != len(args):
        raise ValueError(
            f"{signature} expects {len(types)} arguments, got {len(args)}"
        )
    data = function_selector(signature) + encode(types, list(args))
    return Web3.to_hex(data)


def hex_to_bytes(payload: str) -> bytes:
    """Decode 0x-prefixed calldata into bytes for nested ``bytes`` arguments."""
    return bytes(Web3.to_bytes(hexstr=payload))
