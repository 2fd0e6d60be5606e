"""
Configuration models for the autopay relayer.

Uses Pydantic for validation and type safety.
"""
from typing import List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
from decimal import Decimal
import os
import re

from autopay.constants import (
    CLOCK_OBJECT_ID,
    DEFAULT_EVENT_PAGE_LIMIT,
    DEFAULT_GAS_BUDGET,
    DEFAULT_SCAN_INTERVAL_SECONDS,
    DEFAULT_SLIPPAGE_BPS,
    NATIVE_ASSET,
    RETRY_BASE_DELAY_MS,
    RETRY_MAX_DELAY_MS,
    RETRY_PAUSED_BACKOFF_MS,
)
from autopay.domain.models import Network
from autopay.ledger.venues import ProtocolDeployment

CONFIG_SCHEMA_VERSION = "2026-10-01"

_DEFAULT_DEPLOYMENT = ProtocolDeployment()


class LedgerConfig(BaseSettings):
    """Escrow ledger connection and object ids."""
    model_config = SettingsConfigDict(extra="ignore")

    network: Literal["mainnet", "testnet", "devnet"] = "testnet"
    rpc_url: Optional[str] = None
    package_id: str = _DEFAULT_DEPLOYMENT.autopay_package_id
    registry_id: str = "0x7e61"
    clock_object_id: str = CLOCK_OBJECT_ID
    native_asset: str = NATIVE_ASSET

    @property
    def network_enum(self) -> Network:
        return Network(self.network)


class ProtocolsConfig(BaseSettings):
    """Venue package and shared-object ids for withdraw and swap legs."""
    model_config = SettingsConfigDict(extra="ignore")

    suilend_package_id: str = _DEFAULT_DEPLOYMENT.suilend_package_id
    suilend_lending_market_id: str = _DEFAULT_DEPLOYMENT.suilend_lending_market_id
    suilend_lending_market_type: str = _DEFAULT_DEPLOYMENT.suilend_lending_market_type
    navi_package_id: str = _DEFAULT_DEPLOYMENT.navi_package_id
    scallop_package_id: str = _DEFAULT_DEPLOYMENT.scallop_package_id
    scallop_version_id: str = _DEFAULT_DEPLOYMENT.scallop_version_id
    scallop_market_id: str = _DEFAULT_DEPLOYMENT.scallop_market_id
    cetus_package_id: str = _DEFAULT_DEPLOYMENT.cetus_package_id


class ExecutorConfig(BaseSettings):
    """Scan loop and dispatch configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    scan_interval_seconds: float = Field(default=DEFAULT_SCAN_INTERVAL_SECONDS, ge=1.0, le=600.0)
    event_page_limit: int = Field(default=DEFAULT_EVENT_PAGE_LIMIT, ge=1, le=1000)
    call_timeout_seconds: float = Field(default=10.0, ge=1.0, le=120.0, description="Bound on every external call")
    default_slippage_bps: int = Field(default=DEFAULT_SLIPPAGE_BPS, ge=0, le=10_000)
    mark_failed_on_security_error: bool = True
    max_parallel_tasks: int = Field(default=1, ge=1, le=32)


class GasConfig(BaseSettings):
    """Gas budget. Always clamped into the safety window when composing."""
    model_config = SettingsConfigDict(extra="ignore")

    gas_budget_limit: int = DEFAULT_GAS_BUDGET


class RetryConfig(BaseSettings):
    """Retry delays per error kind."""
    model_config = SettingsConfigDict(extra="ignore")

    base_delay_ms: int = Field(default=RETRY_BASE_DELAY_MS, ge=0)
    max_delay_ms: int = Field(default=RETRY_MAX_DELAY_MS, ge=0)
    paused_backoff_ms: int = Field(default=RETRY_PAUSED_BACKOFF_MS, ge=0)
    not_ready_delay_ms: int = Field(default=0, ge=0)
    max_not_ready_retries: int = Field(default=1, ge=0, le=5, description="Immediate retries after NotReadyYet; then the next scan decides")
    max_attempts: int = Field(default=3, ge=1, le=20, description="Backoff retries per dispatch before giving up")


class StrategyConfig(BaseSettings):
    """Yield protocol selection heuristics."""
    model_config = SettingsConfigDict(extra="ignore")

    min_tvl: Decimal = Field(default=Decimal("100000"), ge=0)
    min_apr: float = Field(default=1.0, ge=0.0)
    assumed_max_apr: float = Field(default=50.0, gt=0.0)
    apr_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    risk_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    liquidity_preference_apr_delta: float = Field(default=0.5, ge=0.0, le=10.0)

    @model_validator(mode="after")
    def validate_weights(self):
        if abs(self.apr_weight + self.risk_weight - 1.0) > 1e-9:
            raise ValueError("apr_weight + risk_weight must equal 1.0")
        return self


class SigningConfig(BaseSettings):
    """Relayer and optional gas-station keys (base64 ed25519 secrets)."""
    model_config = SettingsConfigDict(extra="ignore")

    relayer_private_key: Optional[str] = None
    gas_station_private_key: Optional[str] = None

    @field_validator("relayer_private_key", "gas_station_private_key", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and (not v.strip() or v.strip().startswith("${")):
            return None
        return v


class DataConfig(BaseSettings):
    """Strategy record storage."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None
    echo_sql: bool = False


class MonitoringConfig(BaseSettings):
    """Monitoring and alerting configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None

    health_host: str = "0.0.0.0"
    health_port: Optional[int] = Field(default=8080, ge=1, le=65535)

    alert_methods: List[str] = ["log"]
    slack_webhook_url: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    protocols: ProtocolsConfig = Field(default_factory=ProtocolsConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    gas: GasConfig = Field(default_factory=GasConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    signing: SigningConfig = Field(default_factory=SigningConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Regex to find ${VAR} or $VAR
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        # Secrets come from the environment when the YAML leaves them out
        signing = config_dict.setdefault("signing", {}) or {}
        config_dict["signing"] = signing
        for field_name, env_name in (
            ("relayer_private_key", "RELAYER_PRIVATE_KEY"),
            ("gas_station_private_key", "GAS_STATION_PRIVATE_KEY"),
        ):
            if not signing.get(field_name) and os.getenv(env_name):
                signing[field_name] = os.environ[env_name]

        data = config_dict.setdefault("data", {}) or {}
        config_dict["data"] = data
        if not data.get("database_url") and os.getenv("DATABASE_URL"):
            data["database_url"] = os.environ["DATABASE_URL"]

        return cls(**config_dict)

    def deployment(self) -> ProtocolDeployment:
        p = self.protocols
        return ProtocolDeployment(
            autopay_package_id=self.ledger.package_id,
            suilend_package_id=p.suilend_package_id,
            suilend_lending_market_id=p.suilend_lending_market_id,
            suilend_lending_market_type=p.suilend_lending_market_type,
            navi_package_id=p.navi_package_id,
            scallop_package_id=p.scallop_package_id,
            scallop_version_id=p.scallop_version_id,
            scallop_market_id=p.scallop_market_id,
            cetus_package_id=p.cetus_package_id,
        )

    def validate_config(self) -> None:
        """Perform additional validation checks."""
        if self.gas.gas_budget_limit <= 0:
            raise ValueError("gas.gas_budget_limit must be positive")

        if self.retry.max_delay_ms < self.retry.base_delay_ms:
            raise ValueError("retry.max_delay_ms must be >= retry.base_delay_ms")

        if self.environment == "prod":
            if self.ledger.package_id == _DEFAULT_DEPLOYMENT.autopay_package_id:
                raise ValueError("ledger.package_id must be set in production")
            if self.ledger.registry_id == LedgerConfig.model_fields["registry_id"].default:
                raise ValueError("ledger.registry_id must be set in production")


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses autopay/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
