"""
Configuration models for the copy trading system.

Uses Pydantic for validation and type safety. Values come from
config.yaml (with ${VAR} expansion) and a small set of process-start
environment overrides.
"""
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from copytrader import constants

_TRUE_STRINGS = ("1", "true", "True", "TRUE", "yes")


class ExecutionConfig(BaseSettings):
    """Order execution pacing, retry and dry-run settings."""
    model_config = SettingsConfigDict(extra="ignore")

    dry_run: bool = False  # If True, the simulated executor is selected at startup
    max_retries: int = Field(default=constants.MAX_RETRIES, ge=1, le=10, description="Total attempts per order")
    retry_base_delay_ms: int = Field(default=constants.RETRY_BASE_DELAY_MS, ge=0, le=60_000)
    min_api_interval_ms: int = Field(default=constants.MIN_API_INTERVAL_MS, ge=0, le=60_000)
    margin_buffer: Decimal = Field(default=constants.MARGIN_BUFFER, ge=Decimal("1"), le=Decimal("2"))
    dry_run_success_rate: float = Field(default=constants.DRY_RUN_SUCCESS_RATE, ge=0.0, le=1.0)
    dry_run_min_delay_seconds: float = Field(default=constants.DRY_RUN_MIN_DELAY_SECONDS, ge=0.0)
    dry_run_max_delay_seconds: float = Field(default=constants.DRY_RUN_MAX_DELAY_SECONDS, ge=0.0)
    # Leverage above the instrument max is sent and left for the venue to reject unless this is set
    abort_on_leverage_warning: bool = False


class VenueConfig(BaseSettings):
    """Venue REST endpoint and timeouts."""
    model_config = SettingsConfigDict(extra="ignore")

    base_url: str = constants.VENUE_BASE_URL
    order_timeout_seconds: float = Field(default=constants.ORDER_TIMEOUT_SECONDS, gt=0, le=120)
    request_timeout_seconds: float = Field(default=constants.REQUEST_TIMEOUT_SECONDS, gt=0, le=120)
    instrument_cache_ttl_seconds: int = Field(default=constants.INSTRUMENT_CACHE_TTL_SECONDS, ge=0)


class SizingConfig(BaseSettings):
    """Per-instrument submission rounding overrides."""
    model_config = SettingsConfigDict(extra="ignore")

    # Pairs the venue only accepts in whole units
    whole_quantity_pairs: List[str] = Field(default_factory=list)
    # Pair -> number of decimal places the venue accepts
    quantity_precision_overrides: Dict[str, int] = Field(default_factory=dict)

    @field_validator("quantity_precision_overrides")
    @classmethod
    def validate_precision(cls, v):
        for pair, places in v.items():
            if places < 0:
                raise ValueError(f"Precision override for {pair} must be >= 0, got {places}")
        return v


class ReconciliationConfig(BaseSettings):
    """P&L reconciliation sweep settings."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    interval_seconds: int = Field(default=constants.RECONCILE_INTERVAL_SECONDS, ge=5, le=86_400)
    batch_limit: int = Field(default=constants.RECONCILE_BATCH_LIMIT, ge=1, le=10_000)


class MonitoringConfig(BaseSettings):
    """Logging and fund monitoring configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None
    fund_check_interval_seconds: int = Field(default=600, ge=30, le=86_400)


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None


class SecurityConfig(BaseSettings):
    """Credential encryption settings."""
    model_config = SettingsConfigDict(extra="ignore")

    # Name of the env var holding the credential encryption passphrase
    encryption_key_env: str = "COPYTRADER_ENCRYPTION_KEY"
    encryption_salt_env: str = "COPYTRADER_ENCRYPTION_SALT"


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    venue: VenueConfig = Field(default_factory=VenueConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    environment: Literal["dev", "paper", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR; unknown variables are left as written
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        config_dict = yaml.safe_load(pattern.sub(replace_match, raw_content)) or {}
        apply_env_overrides(config_dict)
        return cls(**config_dict)


def apply_env_overrides(config_dict: dict) -> dict:
    """
    Apply process-start environment overrides onto a raw config dict.

    DRY_RUN, MAX_RETRIES, RETRY_BASE_DELAY_MS and MIN_API_INTERVAL_MS override
    the execution section; DATABASE_URL and ENVIRONMENT override theirs.
    """
    execution = config_dict.setdefault("execution", {})

    dry_run = os.getenv("DRY_RUN")
    if dry_run is not None:
        execution["dry_run"] = dry_run in _TRUE_STRINGS

    for env_name, key in (
        ("MAX_RETRIES", "max_retries"),
        ("RETRY_BASE_DELAY_MS", "retry_base_delay_ms"),
        ("MIN_API_INTERVAL_MS", "min_api_interval_ms"),
    ):
        raw = os.getenv(env_name)
        if raw is not None and raw.strip():
            execution[key] = int(raw)

    db_url = os.getenv("DATABASE_URL")
    if db_url:
        config_dict.setdefault("data", {})["database_url"] = db_url

    if "ENVIRONMENT" in os.environ:
        config_dict["environment"] = os.environ["ENVIRONMENT"]

    return config_dict


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses copytrader/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If a value is out of range
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"
    return Config.from_yaml(config_path)
