"""
Configuration loading and validation for the arbitrage engine.

Settings come from an optional YAML file validated with Pydantic; secrets
and deployment-specific values are overridden from the environment (a
``.env`` file is honoured through python-dotenv).
"""

import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from web3 import Web3

from .dex_mev.addresses import (
    BLACKLIST_TOKENS,
    CRO_FACTORY_ADDRESS,
    LUA_FACTORY_ADDRESS,
    SUSHISWAP_FACTORY_ADDRESS,
    UNISWAP_FACTORY_ADDRESS,
    UNISWAP_LOOKUP_CONTRACT_ADDRESS,
    ZEUS_FACTORY_ADDRESS,
)
from .dex_mev.market_index import FactoryInfo
from .dex_mev.pricing import FeeSchedule
from .dex_mev.relay import DEFAULT_RELAY_URL
from .exceptions import ConfigurationError
from .utils import GWEI, get_default_relay_signing_key, to_wei

logger = logging.getLogger(__name__)

# Environment variable -> config field
ENV_OVERRIDES = {
    "ETHEREUM_RPC_URL": "ethereum_rpc_url",
    "PRIVATE_KEY": "private_key",
    "BUNDLE_EXECUTOR_ADDRESS": "bundle_executor_address",
    "FLASHBOTS_RELAY_SIGNING_KEY": "flashbots_relay_signing_key",
    "FLASHBOTS_RELAY_URL": "flashbots_relay_url",
    "MINER_REWARD_PERCENTAGE": "miner_reward_percentage",
    "HEALTHCHECK_URL": "healthcheck_url",
}


class FactoryConfig(BaseModel):
    """A Uniswap V2 style factory to enumerate at start-up"""

    name: str = Field(min_length=1)
    address: str
    fee_bps: int = Field(default=30, ge=0, lt=10000)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v):
        if not Web3.is_address(v):
            raise ValueError(f"Invalid factory address: {v}")
        return Web3.to_checksum_address(v)

    def to_factory_info(self) -> FactoryInfo:
        return FactoryInfo(self.address, self.name, FeeSchedule.from_bps(self.fee_bps))


def default_factories() -> List[FactoryConfig]:
    return [
        FactoryConfig(name="CroDefiSwap", address=CRO_FACTORY_ADDRESS),
        FactoryConfig(name="Zeus", address=ZEUS_FACTORY_ADDRESS),
        FactoryConfig(name="LuaSwap", address=LUA_FACTORY_ADDRESS),
        FactoryConfig(name="Sushiswap", address=SUSHISWAP_FACTORY_ADDRESS),
        FactoryConfig(name="UniswapV2", address=UNISWAP_FACTORY_ADDRESS),
    ]


class ArbitrageConfig(BaseModel):
    """Validated engine configuration"""

    ethereum_rpc_url: str = "http://127.0.0.1:8545"
    private_key: str = ""
    bundle_executor_address: str = ""
    flashbots_relay_signing_key: Optional[str] = None
    flashbots_relay_url: str = DEFAULT_RELAY_URL
    healthcheck_url: Optional[str] = None

    miner_reward_percentage: int = Field(default=80, ge=0, le=100)
    min_liquidity_eth: Decimal = Field(default=Decimal("1"), ge=0)
    min_profit_eth: Decimal = Field(default=Decimal("0.001"), ge=0)
    gas_ceiling: int = Field(default=1_400_000, gt=0)
    priority_fee_gwei: Decimal = Field(default=Decimal("0"), ge=0)
    search: Literal["ladder", "ternary"] = "ladder"

    lookup_contract_address: str = UNISWAP_LOOKUP_CONTRACT_ADDRESS
    factories: List[FactoryConfig] = Field(default_factory=default_factories)
    blacklist_tokens: List[str] = Field(default_factory=lambda: list(BLACKLIST_TOKENS))
    discovery_batch_size: int = Field(default=1000, gt=0)
    discovery_batch_count_limit: int = Field(default=100, gt=0)

    poll_interval_seconds: float = Field(default=1.0, gt=0, le=60)
    relay_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    healthcheck_timeout_seconds: float = Field(default=5.0, gt=0, le=60)

    @field_validator("private_key", "flashbots_relay_signing_key")
    @classmethod
    def validate_key(cls, v):
        if v in (None, ""):
            return v
        body = v[2:] if v.startswith("0x") else v
        if len(body) != 64:
            raise ValueError("private keys must be 32 bytes of hex")
        try:
            int(body, 16)
        except ValueError:
            raise ValueError("private keys must be hex encoded") from None
        return "0x" + body

    @field_validator("bundle_executor_address", "lookup_contract_address")
    @classmethod
    def validate_contract_address(cls, v):
        if v == "":
            return v
        if not Web3.is_address(v):
            raise ValueError(f"Invalid contract address: {v}")
        return Web3.to_checksum_address(v)

    @model_validator(mode="after")
    def validate_factories(self):
        addresses = [f.address for f in self.factories]
        if len(set(addresses)) != len(addresses):
            raise ValueError("factories must not contain duplicate addresses")
        return self

    @property
    def min_liquidity_wei(self) -> int:
        return to_wei(self.min_liquidity_eth)

    @property
    def min_profit_wei(self) -> int:
        return to_wei(self.min_profit_eth)

    @property
    def priority_fee_wei(self) -> int:
        return int(self.priority_fee_gwei * GWEI)

    def factory_infos(self) -> List[FactoryInfo]:
        return [f.to_factory_info() for f in self.factories]

    def require_credentials(self) -> None:
        """
        Raises:
            ConfigurationError: If the wallet key or executor address is missing
        """
        if not self.private_key:
            raise ConfigurationError("Must provide PRIVATE_KEY environment variable")
        if not self.bundle_executor_address:
            raise ConfigurationError(
                "Incorrect BUNDLE_EXECUTOR_ADDRESS "
                "(must be a deployed bundle executor contract)"
            )


def load_yaml_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if config_dict is None:
        return {}
    if not isinstance(config_dict, dict):
        raise ConfigurationError(f"Top level of {config_path} must be a mapping")
    return config_dict


def apply_env_overrides(
    config_dict: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    merged = dict(config_dict)
    for env_name, field_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            merged[field_name] = value
    return merged


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    require_credentials: bool = True,
    use_dotenv: bool = True,
) -> ArbitrageConfig:
    """
    Build the engine configuration from YAML, ``.env`` and the environment.

    Args:
        config_path: Optional YAML file
        environ: Environment mapping (defaults to ``os.environ``)
        require_credentials: Fail when wallet key or executor address is missing
        use_dotenv: Load a ``.env`` file into the environment first

    Raises:
        ConfigurationError: On unreadable files, invalid values or missing credentials
    """
    if use_dotenv and environ is None:
        load_dotenv()

    config_dict = load_yaml_config(config_path) if config_path else {}
    config_dict = apply_env_overrides(config_dict, environ)

    try:
        config = ArbitrageConfig(**config_dict)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}", details={"errors": e.errors()}
        ) from e

    if require_credentials:
        config.require_credentials()

    if not config.flashbots_relay_signing_key:
        config.flashbots_relay_signing_key = get_default_relay_signing_key()

    logger.debug(
        f"Loaded configuration: rpc={config.ethereum_rpc_url}, "
        f"factories={[f.name for f in config.factories]}, search={config.search}"
    )
    return config
