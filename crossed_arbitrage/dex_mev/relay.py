"""
Flashbots-style relay client.

Bundles are simulated with ``eth_callBundle`` and submitted with
``eth_sendBundle``. Every request is authenticated with the
``X-Flashbots-Signature`` header: the relay signing key's address and its
EIP-191 signature over the keccak hash of the request body.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from ..exceptions import NetworkError
from ..utils import GWEI, format_ether

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "https://relay.flashbots.net"


@dataclass
class SimulationResult:
    """Decoded ``eth_callBundle`` response."""

    bundle_hash: Optional[str] = None
    coinbase_diff: int = 0
    total_gas_used: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[Any] = None
    first_revert: Optional[Dict[str, Any]] = None

    @property
    def effective_gas_price(self) -> int:
        """Wei paid to the block producer per unit of gas."""
        if not self.total_gas_used:
            return 0
        return self.coinbase_diff // self.total_gas_used

    @classmethod
    def from_response(cls, response: Dict[str, Any]) -> "SimulationResult":
        if "error" in response:
            return cls(error=response["error"])

        result = response.get("result") or {}
        results = list(result.get("results") or [])
        first_revert = next(
            (r for r in results if "revert" in r or "error" in r), None
        )
        return cls(
            bundle_hash=result.get("bundleHash"),
            coinbase_diff=int(result.get("coinbaseDiff", 0) or 0),
            total_gas_used=int(result.get("totalGasUsed", 0) or 0),
            results=results,
            first_revert=first_revert,
        )

    def describe(self) -> str:
        return (
            f"coinbase diff {format_ether(self.coinbase_diff)} ETH, "
            f"gas used {self.total_gas_used}, "
            f"effective gas price {self.effective_gas_price / GWEI:.2f} GWEI"
        )


def sign_request_body(body: str, signing_key: str) -> str:
    """Value of the ``X-Flashbots-Signature`` header for a request body."""
    account = Account.from_key(signing_key)
    message = encode_defunct(text=Web3.to_hex(Web3.keccak(text=body)))
    signed = Account.sign_message(message, private_key=signing_key)
    return f"{account.address}:{Web3.to_hex(signed.signature)}"


def sign_bundle(transactions: Sequence[Dict[str, Any]], private_key: str) -> List[str]:
    """Sign fully populated transactions; returns raw 0x-hex transactions."""
    signed_transactions = []
    for transaction in transactions:
        tx = {k: v for k, v in transaction.items() if k != "from"}
        signed = Account.sign_transaction(tx, private_key)
        signed_transactions.append(Web3.to_hex(signed.raw_transaction))
    return signed_transactions


class FlashbotsRelay:
    """
    Minimal async JSON-RPC client for a bundle relay.

    Usage:
        async with FlashbotsRelay(signing_key) as relay:
            simulation = await relay.simulate(signed_bundle, block_number + 1)
    """

    def __init__(
        self,
        signing_key: str,
        relay_url: str = DEFAULT_RELAY_URL,
        timeout_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.signing_key = signing_key
        self.relay_url = relay_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._request_id = 0

    async def __aenter__(self) -> "FlashbotsRelay":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    def build_request(self, method: str, params: List[Any]) -> Dict[str, Any]:
        self._request_id += 1
        return {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

    async def _rpc(self, method: str, params: List[Any]) -> Dict[str, Any]:
        body = json.dumps(self.build_request(method, params))
        headers = {
            "Content-Type": "application/json",
            "X-Flashbots-Signature": sign_request_body(body, self.signing_key),
        }
        try:
            async with self._get_session().post(
                self.relay_url, data=body, headers=headers
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise NetworkError(
                        f"Relay returned HTTP {resp.status} for {method}: {text[:200]}",
                        endpoint=self.relay_url,
                        status_code=resp.status,
                    )
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(
                f"Relay request {method} failed: {e}", endpoint=self.relay_url
            ) from e

    async def simulate(
        self,
        signed_bundle: Sequence[str],
        block_number: int,
        state_block: str = "latest",
    ) -> SimulationResult:
        """Run ``eth_callBundle`` for ``block_number`` on top of ``state_block``."""
        response = await self._rpc(
            "eth_callBundle",
            [
                {
                    "txs": list(signed_bundle),
                    "blockNumber": hex(block_number),
                    "stateBlockNumber": state_block,
                }
            ],
        )
        simulation = SimulationResult.from_response(response)
        logger.debug(f"Simulation for block {block_number}: {simulation}")
        return simulation

    async def send_raw_bundle(
        self, signed_bundle: Sequence[str], block_number: int
    ) -> Dict[str, Any]:
        """Submit via ``eth_sendBundle`` targeting exactly ``block_number``."""
        response = await self._rpc(
            "eth_sendBundle",
            [{"txs": list(signed_bundle), "blockNumber": hex(block_number)}],
        )
        if "error" in response:
            raise NetworkError(
                f"Relay rejected bundle for block {block_number}: {response['error']}",
                endpoint=self.relay_url,
            )
        return response.get("result") or {}
