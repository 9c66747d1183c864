"""
Configuration models for the exit reconciler.

Uses Pydantic for validation and type safety.
"""
import os
import re
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


class MonitorConfig(BaseSettings):
    """Conditional order monitor configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    check_interval_seconds: int = Field(default=30, ge=1, le=3600, description="Seconds between reconciliation passes")
    recency_window_seconds: int = Field(
        default=300, ge=30, le=3600,
        description="Only trades this recent may confirm a trigger",
    )
    trade_lookback_limit: int = Field(default=100, ge=1, le=1000, description="Recent trades fetched per candidate")


class ExchangeConfig(BaseSettings):
    """Exchange configuration (ccxt-backed capability)."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "gateio"  # ccxt exchange id
    default_type: str = "swap"
    quote_currency: str = "USDT"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    use_testnet: bool = False
    timeout_ms: int = Field(default=30000, ge=1000, le=120000)
    # Extra params passed to fetch_open_orders to list trigger orders only
    open_orders_params: Dict[str, Any] = Field(default_factory=lambda: {"trigger": True})
    trade_format: Literal["ccxt", "gate", "binance", "generic"] = "ccxt"

    def has_valid_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret and not self.api_key.startswith("${"))


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = "logs/price_order_monitor.log"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} / $VAR references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Leave unresolved references as-is

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}
        _apply_env_overrides(config_dict)

        return cls(**config_dict)


def _apply_env_overrides(config_dict: Dict[str, Any]) -> None:
    """Environment variables that take precedence over the YAML file."""
    if "ENVIRONMENT" in os.environ:
        config_dict["environment"] = os.environ["ENVIRONMENT"]

    interval = os.getenv("PRICE_ORDER_CHECK_INTERVAL")
    if interval:
        config_dict.setdefault("monitor", {})["check_interval_seconds"] = int(interval)

    db_url = os.getenv("DATABASE_URL")
    if db_url:
        config_dict.setdefault("data", {})["database_url"] = db_url

    log_level = os.getenv("LOG_LEVEL")
    if log_level:
        config_dict.setdefault("monitoring", {})["log_level"] = log_level


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to a YAML file. If None, uses CONFIG_PATH or the
            packaged config.yaml.

    Raises:
        FileNotFoundError: If the config file is missing
        pydantic.ValidationError: If validation fails
    """
    if config_path is None:
        config_path = os.getenv("CONFIG_PATH") or DEFAULT_CONFIG_PATH
    return Config.from_yaml(config_path)
