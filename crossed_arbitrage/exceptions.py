"""
Exception hierarchy for the crossed-market arbitrage engine.

Quoting errors are local to a single computation, pipeline gate errors are
recovered by moving on to the next candidate, and only exhaustion of every
candidate surfaces as a cycle-level failure.
"""

from typing import Any, Dict, Optional


class ArbitrageError(Exception):
    """Base exception for all arbitrage engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(ArbitrageError):
    """Raised when there are configuration-related issues."""

    pass


class InvalidMarketInput(ArbitrageError, ValueError):
    """Raised when a market is asked about a token it does not trade or a bad amount."""

    def __init__(
        self,
        message: str,
        market_address: Optional[str] = None,
        token_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.market_address = market_address
        self.token_address = token_address


class ArithmeticInfeasible(ArbitrageError, ArithmeticError):
    """Raised when a requested output meets or exceeds the pool reserve."""

    def __init__(
        self,
        message: str,
        reserve_out: Optional[int] = None,
        amount_out: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.reserve_out = reserve_out
        self.amount_out = amount_out


class DataError(ArbitrageError):
    """Raised when on-chain data (reserves, pair listings) is malformed."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.source = source


class NetworkError(ArbitrageError):
    """Raised when the relay or RPC endpoint cannot be reached."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code


class PipelineGateError(ArbitrageError):
    """Raised when an opportunity fails one of the submission gates."""

    reason = "gate_failed"

    def __init__(
        self,
        message: str,
        token_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.token_address = token_address


class EstimationFailure(PipelineGateError):
    """Raised when gas estimation of the bundle invocation errors."""

    reason = "estimate_failed"


class AnomalousGasEstimate(PipelineGateError):
    """Raised when the gas estimate succeeds but exceeds the hard ceiling."""

    reason = "estimate_anomalous"

    def __init__(
        self,
        message: str,
        estimate: Optional[int] = None,
        ceiling: Optional[int] = None,
        token_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, token_address, details)
        self.estimate = estimate
        self.ceiling = ceiling


class SimulationRejected(PipelineGateError):
    """Raised when the relay simulation reports an error or a reverting call."""

    reason = "simulation_rejected"


class SimulationFailure(SimulationRejected):
    """Raised when the relay could not be reached to simulate the bundle."""

    reason = "simulation_failed"


class TransactionPreparationFailure(PipelineGateError):
    """Raised when nonce, chain id or fee lookup, or signing, fails."""

    reason = "populate_failed"


class NoOpportunitySubmitted(ArbitrageError):
    """Raised when every candidate opportunity of a cycle was rejected."""

    def __init__(
        self,
        message: str = "No arbitrage submitted to relay",
        block_number: Optional[int] = None,
        attempts: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.block_number = block_number
        self.attempts = attempts
