"""
Configuration management using Pydantic settings.

Loads configuration from YAML with ${VAR} environment expansion and
validates cross-section constraints (markets, pools, slippage bounds).
"""
import os
import re
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coreyield.config.dotenv_loader import load_dotenv_files
from coreyield.constants import (
    DEFAULT_CONFIRMATION_POLL_SECONDS,
    DEFAULT_CONFIRMATION_TIMEOUT_SECONDS,
    DEFAULT_FAUCET_URL,
    DEFAULT_HISTORY_MAX_RECORDS,
    DEFAULT_MIN_OUTPUT_RATIO_BPS,
    DEFAULT_POOL_CAP_BPS,
    DEFAULT_RPC_TIMEOUT_SECONDS,
    DEFAULT_SLIPPAGE_BPS,
    MAX_READ_RETRIES,
    MAX_SLIPPAGE_BPS,
)
from coreyield.domain.models import Market, OperationKind, PoolSpec
from coreyield.exceptions import ValidationError
from coreyield.monitoring.logger import get_logger

logger = get_logger(__name__)


class NetworkConfig(BaseSettings):
    """Chain and RPC endpoint settings."""
    model_config = SettingsConfigDict(extra="ignore")

    chain_id: int = Field(default=1114, ge=1)
    name: str = "Core Testnet2"
    rpc_url: str = "https://rpc.test2.btcs.network"
    explorer_url: str = "https://scan.test2.btcs.network"
    faucet_url: str = DEFAULT_FAUCET_URL
    rpc_timeout_seconds: int = Field(default=DEFAULT_RPC_TIMEOUT_SECONDS, ge=1, le=300)
    confirmation_timeout_seconds: float = Field(default=DEFAULT_CONFIRMATION_TIMEOUT_SECONDS, ge=1.0, le=3600.0)
    confirmation_poll_seconds: float = Field(default=DEFAULT_CONFIRMATION_POLL_SECONDS, gt=0.0, le=60.0)
    read_retries: int = Field(default=MAX_READ_RETRIES, ge=0, le=10)


class ContractsConfig(BaseSettings):
    """Per-chain contract addresses."""
    model_config = SettingsConfigDict(extra="ignore")

    staking: str
    token_operations: str
    amm: str
    router: str
    staking_token: str
    staking_token_decimals: int = Field(default=18, ge=0, le=36)
    minter: Optional[str] = Field(default=None, description="Only this account may call mint() on test tokens")


class MarketConfig(BaseModel):
    """One market entry. Plain model: list items never read the environment."""
    model_config = ConfigDict(extra="ignore")

    id: str
    asset: str
    underlying: str
    sy: str
    pt: str
    yt: str
    maturity: int = Field(ge=0)
    decimals: int = Field(default=18, ge=0, le=36)
    pool: Optional[str] = None

    def to_market(self) -> Market:
        return Market(
            market_id=self.id,
            asset=self.asset,
            underlying=self.underlying,
            sy_token=self.sy,
            pt_token=self.pt,
            yt_token=self.yt,
            maturity=self.maturity,
            decimals=self.decimals,
            pool_id=self.pool,
        )


class PoolConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    token_a: str
    token_b: str

    def to_spec(self) -> PoolSpec:
        return PoolSpec(pool_id=self.id, token_a=self.token_a, token_b=self.token_b)


class ExecutionConfig(BaseSettings):
    """Operation execution policy."""
    model_config = SettingsConfigDict(extra="ignore")

    approval_policy: Literal["exact", "unlimited"] = "exact"
    unlimited_approval_kinds: List[OperationKind] = Field(
        default_factory=list,
        description="Kinds that keep a standing MAX_UINT256 allowance even under the exact policy",
    )
    default_slippage_bps: int = Field(default=DEFAULT_SLIPPAGE_BPS, ge=0, le=5000)
    max_slippage_bps: int = Field(default=MAX_SLIPPAGE_BPS, ge=0, le=9999)
    pool_cap_bps: int = Field(default=DEFAULT_POOL_CAP_BPS, ge=1, le=10000)
    min_output_ratio_bps: int = Field(default=DEFAULT_MIN_OUTPUT_RATIO_BPS, ge=0, le=10000)


class HistoryConfig(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    max_records: int = Field(default=DEFAULT_HISTORY_MAX_RECORDS, ge=1, le=100_000)


class MonitoringConfig(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    contracts: ContractsConfig
    markets: List[MarketConfig]
    pools: List[PoolConfig] = Field(default_factory=list)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "test", "prod"] = "prod"

    @model_validator(mode="after")
    def _slippage_bounds(self) -> "Config":
        if self.execution.default_slippage_bps > self.execution.max_slippage_bps:
            raise ValueError(
                f"default_slippage_bps ({self.execution.default_slippage_bps}) "
                f"exceeds max_slippage_bps ({self.execution.max_slippage_bps})"
            )
        return self

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR; unknown names are left as-is
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        config_dict = yaml.safe_load(pattern.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]
        if os.getenv("CORE_RPC_URL"):
            config_dict.setdefault("network", {})["rpc_url"] = os.environ["CORE_RPC_URL"]

        return cls(**config_dict)

    def build_markets(self) -> List[Market]:
        return [m.to_market() for m in self.markets]

    def build_pools(self) -> List[PoolSpec]:
        return [p.to_spec() for p in self.pools]

    def token_decimals(self) -> Dict[str, int]:
        """Decimals for tokens that are not part of a market triple."""
        return {self.contracts.staking_token: self.contracts.staking_token_decimals}

    def validate_config(self) -> None:
        """Cross-section checks the per-field validators cannot express."""
        seen_ids = set()
        token_owner: Dict[str, str] = {}
        pool_ids = {p.id for p in self.pools}

        for market in self.markets:
            if market.id in seen_ids:
                raise ValidationError(f"Duplicate market id: {market.id}")
            seen_ids.add(market.id)

            triple = [market.sy.lower(), market.pt.lower(), market.yt.lower()]
            if len(set(triple)) != 3:
                raise ValidationError(f"Market {market.id}: SY/PT/YT must be three distinct tokens")
            for token in triple:
                if token in token_owner:
                    raise ValidationError(
                        f"Market {market.id}: token {token} already used by market {token_owner[token]}"
                    )
                token_owner[token] = market.id

            if market.pool is not None and market.pool not in pool_ids:
                raise ValidationError(f"Market {market.id} references unknown pool {market.pool}")

        if len(pool_ids) != len(self.pools):
            raise ValidationError("Duplicate pool id in pools section")

        if self.execution.approval_policy == "unlimited":
            logger.warning(
                "Unlimited approval policy enabled: every approval grants MAX_UINT256",
                environment=self.environment,
            )
        elif self.execution.unlimited_approval_kinds:
            logger.warning(
                "Unlimited approvals enabled for selected operation kinds",
                kinds=[k.value for k in self.execution.unlimited_approval_kinds],
            )


def load_config(config_path: Optional[Union[str, Path]] = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses coreyield/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValidationError: If cross-section validation fails
    """
    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
