from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import tomlkit
from pydantic import BaseModel, Field, ValidationError
from tomlkit.exceptions import TOMLKitError

from hookpolicy.exception import ConfigError
from hookpolicy.hooks.config import DEFAULT_TIMEOUT_MS
from hookpolicy.share import get_share_dir
from hookpolicy.utils.logging import logger


class LoggingConfig(BaseModel):
    """Log levels, per module, on top of the default level."""

    level: str = Field(default="INFO", description="Default log level for the log file")
    levels: dict[str, str] = Field(
        default_factory=dict, description="Per-module overrides, e.g. `hookpolicy.hooks`"
    )


class Config(BaseModel):
    """Main configuration structure."""

    default_timeout: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        ge=100,
        le=600000,
        description="Timeout in milliseconds for hooks that do not set one",
    )
    plugin_root: Path | None = Field(
        default=None, description="Plugin directory whose hooks/hooks.json is loaded last"
    )
    checkpoint_log: Path | None = Field(
        default=None,
        description="Checkpoint log file. Default: .hookpolicy/checkpoints.log in the project",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def get_config_file() -> Path:
    """Get the configuration file path."""
    return get_share_dir() / "config.toml"


def load_config_from_string(text: str) -> Config:
    """Load a configuration from JSON or TOML text.

    Raises:
        ConfigError: If the text is neither valid JSON nor TOML, or does not describe
            a valid configuration.
    """
    data: Any
    if text.lstrip().startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}") from e
    else:
        try:
            data = tomlkit.parse(text).unwrap()
        except TOMLKitError as e:
            raise ConfigError(f"Invalid TOML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a table or JSON object")
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_config(config_file: Path | None = None) -> Config:
    """Load the configuration file, or defaults when it does not exist.

    Raises:
        ConfigError: If the file exists but is invalid.
    """
    config_file = config_file or get_config_file()
    if not config_file.exists():
        logger.debug("No config file at {file}, using defaults", file=config_file)
        return Config()
    logger.debug("Loading config from {file}", file=config_file)
    try:
        text = config_file.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}", str(config_file)) from e
    try:
        return load_config_from_string(text)
    except ConfigError as e:
        raise ConfigError(e.message, str(config_file)) from e


def save_config(config: Config, config_file: Path | None = None) -> None:
    config_file = config_file or get_config_file()
    data = config.model_dump(mode="json", exclude_none=True)
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(tomlkit.dumps(data), encoding="utf-8")
