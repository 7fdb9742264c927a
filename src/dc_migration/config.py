"""Configuration management for dc-migrate using Pydantic.

This module provides type-safe configuration models for the source and
destination subscriptions, retry/backoff limits, destination naming,
concurrency and logging.
"""

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dc_migration.client.exceptions import ConfigurationError
from dc_migration.resources import ResourceType, default_max_name_lengths

DEFAULT_DESTINATION_PREFIX = "dc"


class SubscriptionConfig(BaseModel):
    """Configuration for one side (source or destination) of a migration."""

    subscription_id: str = Field(..., description="Subscription identifier")
    location: str = Field(..., description="Data center (location) name")
    name: str | None = Field(default=None, description="Display name for the subscription")
    provider: str = Field(default="memory", description="Cloud provider implementation")
    state_file: str | None = Field(
        default=None, description="Environment snapshot used by the memory provider"
    )

    @field_validator("subscription_id", "location")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Validate value is not blank."""
        if not v or not v.strip():
            raise ValueError("Value cannot be empty")
        return v.strip()


class RetryConfig(BaseModel):
    """Retry/backoff limits applied to every remote call."""

    retry_count: int = Field(default=5, ge=1, le=50, description="Attempts per remote call")
    min_backoff: float = Field(default=3.0, ge=0, description="Minimum backoff in seconds")
    max_backoff: float = Field(default=90.0, ge=0, description="Maximum backoff in seconds")
    delta_backoff: float = Field(
        default=90.0, ge=0, description="Backoff growth factor in seconds"
    )

    @model_validator(mode="after")
    def validate_bounds(self) -> "RetryConfig":
        """Ensure minimum backoff does not exceed maximum backoff."""
        if self.min_backoff > self.max_backoff:
            raise ValueError("min_backoff must be less than or equal to max_backoff")
        return self


class NamingConfig(BaseModel):
    """Destination naming rules."""

    destination_prefix: str = Field(
        default=DEFAULT_DESTINATION_PREFIX,
        description="Prefix prepended to every remapped destination name",
    )
    max_name_lengths: dict[ResourceType, int] = Field(
        default_factory=default_max_name_lengths,
        description="Per-type destination name ceilings",
    )

    @field_validator("destination_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Storage account names only allow lowercase letters and digits."""
        if not re.match(r"^[a-z0-9]*$", v):
            raise ValueError("destination_prefix must contain only lowercase letters and digits")
        return v

    @field_validator("max_name_lengths")
    @classmethod
    def validate_lengths(cls, v: dict[ResourceType, int]) -> dict[ResourceType, int]:
        """Merge overrides onto the defaults and reject unusable limits."""
        merged = default_max_name_lengths()
        for resource_type, length in v.items():
            if length < 2:
                raise ValueError(f"Max name length for {resource_type} must be at least 2")
            merged[resource_type] = length
        return merged


class PathConfig(BaseModel):
    """Configuration for file paths."""

    export_dir: str = Field(default="exports", description="Directory for exported metadata")
    metadata_file: str | None = Field(
        default=None, description="Metadata (progress) document to import"
    )
    mapping_file: str | None = Field(default=None, description="Name mapping document")


class PerformanceConfig(BaseModel):
    """Concurrency and timing configuration."""

    max_concurrent: int = Field(
        default=10, ge=1, le=64, description="Maximum concurrent operations within a tier"
    )
    blob_poll_interval: float = Field(
        default=30.0, ge=0, description="Seconds between blob copy status polls"
    )
    rollback_cooldown: float = Field(
        default=60.0, ge=0, description="Seconds to wait after each rollback stage"
    )


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LoggingConfig(BaseModel):
    """Console and file logging. Levels and format are matched case-insensitively."""

    level: LogLevel = Field(default="WARNING", description="Console log level")
    file_level: LogLevel = Field(default="DEBUG", description="File log level")
    format: Literal["json", "console"] = Field(
        default="json", description="File log format: JSON lines or plain console text"
    )
    file: str | None = Field(
        default="logs/migration.log", description="Log file path (null disables the file)"
    )

    @field_validator("level", "file_level", mode="before")
    @classmethod
    def normalize_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, v: object) -> object:
        return v.lower() if isinstance(v, str) else v


class MigrationConfig(BaseSettings):
    """Main migration configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DC_MIGRATE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Subscriptions (either may be absent for export-only or import-only runs)
    source: SubscriptionConfig | None = Field(default=None, description="Source subscription")
    destination: SubscriptionConfig | None = Field(
        default=None, description="Destination subscription"
    )

    retry: RetryConfig = Field(default_factory=RetryConfig, description="Retry configuration")
    naming: NamingConfig = Field(default_factory=NamingConfig, description="Naming configuration")
    paths: PathConfig = Field(default_factory=PathConfig, description="Path configuration")
    performance: PerformanceConfig = Field(
        default_factory=PerformanceConfig, description="Performance configuration"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    # Operation flags
    quiet_mode: bool = Field(default=False, description="Suppress progress messages")
    rollback_on_failure: bool = Field(
        default=False, description="Roll back created resources when import fails"
    )
    resume_import: bool = Field(
        default=False, description="Resume from an existing progress document"
    )
    generate_mapping: bool = Field(
        default=False, description="Write the name mapping document during export"
    )

    def require_source(self) -> SubscriptionConfig:
        """Get the source subscription, failing if it is not configured."""
        if self.source is None:
            raise ConfigurationError("Source subscription is not configured (section 'source')")
        return self.source

    def require_destination(self) -> SubscriptionConfig:
        """Get the destination subscription, failing if it is not configured."""
        if self.destination is None:
            raise ConfigurationError(
                "Destination subscription is not configured (section 'destination')"
            )
        return self.destination


_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def load_config_from_yaml(config_path: str | Path) -> MigrationConfig:
    """Load configuration from a YAML file.

    `${VAR}` references in string values are replaced with the environment
    variable, which may come from a `.env` file loaded by the CLI. Values not
    set in the file fall back to `DC_MIGRATE_` variables and the defaults.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is empty or references an unset variable
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    raw = yaml.safe_load(config_path.read_text())
    if not raw:
        raise ValueError(f"Empty configuration file: {config_path}")

    return MigrationConfig(**_expand_env_vars(raw))


def _substitute(match: re.Match[str]) -> str:
    name = match.group(1)
    value = os.environ.get(name)
    if value is None:
        raise ValueError(f"Environment variable '{name}' is not set (referenced as ${{{name}}})")
    return value


def _expand_env_vars(value):
    if isinstance(value, dict):
        return {key: _expand_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(item) for item in value]
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(_substitute, value)
    return value


def save_config_to_yaml(config: MigrationConfig, output_path: str | Path) -> Path:
    """Write the configuration as YAML that load_config_from_yaml() reads back."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(
        yaml.safe_dump(config.model_dump(mode="json"), default_flow_style=False, sort_keys=False)
    )
    return output_path
