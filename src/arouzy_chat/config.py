"""Configuration management for the Arouzy chat server.

This module provides TOML-based configuration support with environment and
CLI override capability.

Configuration priority: CLI args > environment > user config > default config
"""

from __future__ import annotations

import argparse
import importlib.resources
import os
import sys
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields
from dataclasses import replace as dataclass_replace
from pathlib import Path
from typing import Any, NamedTuple


class ConfigurationError(Exception):
    """Raised when configuration validation fails.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Configuration validation failed: {'; '.join(errors)}")


class DefaultConfigError(Exception):
    """Raised when the bundled default configuration cannot be loaded.

    This is a fatal error that prevents server startup.
    """

    def __init__(self, message: str) -> None:
        super().__init__(f"Failed to load default configuration: {message}")


class ConfigOverride(NamedTuple):
    """A configuration value that differs from the bundled default."""

    key: str
    default_value: Any
    new_value: Any


@dataclass
class ServerConfig:
    """Server configuration with all settings.

    All fields are required. Default values are loaded from default.toml.
    """

    # Network settings
    host: str
    port: int
    ws_path: str
    cors_origins: list[str]

    # Persistence
    database_url: str | None

    # Authentication
    jwt_secret: str
    jwt_algorithm: str
    jwt_issuer: str | None

    # Messaging limits
    max_message_length: int
    shutdown_timeout: float

    # Logging settings
    log_dir: str | None
    log_level_console: str
    log_json_console: bool
    log_rotation: str | None
    log_retention: str | None


_VALID_KEYS: set[str] = {f.name for f in fields(ServerConfig)}

# Empty strings in TOML mean "not set" for these keys
_OPTIONAL_STR_KEYS = {
    "database_url",
    "jwt_issuer",
    "log_dir",
    "log_rotation",
    "log_retention",
}

# Environment variables shared with the rest of the Arouzy deployment
ENV_OVERRIDES: dict[str, str] = {
    "JWT_SECRET": "jwt_secret",
    "DATABASE_URL": "database_url",
    "CHAT_PORT": "port",
}

_SUPPORTED_JWT_ALGORITHMS = {"HS256", "HS384", "HS512"}


def load_default_toml_data() -> dict[str, Any]:
    """Load default.toml from the package resources.

    Raises:
        DefaultConfigError: If default.toml cannot be found or parsed.
    """
    try:
        content = (
            importlib.resources.files("arouzy_chat")
            .joinpath("default.toml")
            .read_bytes()
        )
        return tomllib.loads(content.decode("utf-8"))
    except FileNotFoundError as e:
        raise DefaultConfigError(f"default.toml not found in package: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise DefaultConfigError(f"Invalid TOML syntax in default.toml: {e}") from e


def load_config_from_toml(path: Path) -> dict[str, Any]:
    """Load configuration from a TOML file.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        tomllib.TOMLDecodeError: If the TOML syntax is invalid.
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def process_toml_config(toml_data: dict[str, Any]) -> dict[str, Any]:
    """Keep known keys and normalize empty optional strings to None."""
    result: dict[str, Any] = {}
    for key, value in toml_data.items():
        if key not in _VALID_KEYS:
            continue
        if key in _OPTIONAL_STR_KEYS and value == "":
            value = None
        result[key] = value
    return result


def get_unknown_keys(toml_data: dict[str, Any]) -> list[str]:
    return [key for key in toml_data if key not in _VALID_KEYS]


def validate_config(config: ServerConfig) -> list[str]:
    """Validate configuration values.

    Returns:
        List of error messages. Empty list if configuration is valid.
    """
    errors: list[str] = []

    if not 1 <= config.port <= 65535:
        errors.append(f"port must be between 1 and 65535, got {config.port}")

    if not config.ws_path.startswith("/"):
        errors.append(f"ws_path must start with '/', got {config.ws_path!r}")

    if not config.jwt_secret:
        errors.append("jwt_secret must not be empty")

    if config.jwt_algorithm not in _SUPPORTED_JWT_ALGORITHMS:
        errors.append(
            f"jwt_algorithm must be one of {sorted(_SUPPORTED_JWT_ALGORITHMS)}, "
            f"got {config.jwt_algorithm}"
        )

    if config.max_message_length <= 0:
        errors.append(
            f"max_message_length must be positive, got {config.max_message_length}"
        )

    if config.shutdown_timeout <= 0:
        errors.append(
            f"shutdown_timeout must be positive, got {config.shutdown_timeout}"
        )

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level_console.upper() not in valid_log_levels:
        errors.append(
            f"log_level_console must be one of {valid_log_levels}, "
            f"got {config.log_level_console}"
        )

    return errors


def load_default_config() -> ServerConfig:
    """Load the default configuration from the bundled default.toml.

    Raises:
        DefaultConfigError: If default.toml cannot be loaded or is incomplete.
    """
    config_data = process_toml_config(load_default_toml_data())

    missing = _VALID_KEYS - set(config_data)
    if missing:
        raise DefaultConfigError(
            f"Missing required fields in default.toml: {', '.join(sorted(missing))}"
        )

    try:
        return ServerConfig(**config_data)
    except TypeError as e:
        raise DefaultConfigError(f"Invalid field types in default.toml: {e}") from e


def merge_env(config: ServerConfig, environ: Mapping[str, str]) -> ServerConfig:
    """Apply JWT_SECRET / DATABASE_URL / CHAT_PORT when set and non-empty."""
    updates: dict[str, Any] = {}
    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if not value:
            continue
        if key == "port":
            try:
                updates[key] = int(value)
            except ValueError as e:
                raise ConfigurationError(
                    [f"{env_name} must be an integer, got {value!r}"]
                ) from e
        else:
            updates[key] = value

    if not updates:
        return config
    return dataclass_replace(config, **updates)


def merge_cli_args(config: ServerConfig, args: argparse.Namespace) -> ServerConfig:
    """Merge CLI arguments into config (CLI takes precedence).

    Only overrides config values when CLI args are explicitly provided.
    """
    updates: dict[str, Any] = {}

    for key in ("host", "port", "database_url"):
        value = getattr(args, key, None)
        if value is not None:
            updates[key] = value

    if getattr(args, "log_dir", None) is not None:
        updates["log_dir"] = str(args.log_dir)
    if getattr(args, "log_level_console", None) is not None:
        updates["log_level_console"] = args.log_level_console
    if getattr(args, "log_json_console", False):
        updates["log_json_console"] = True
    if getattr(args, "log_rotation", None) is not None:
        updates["log_rotation"] = args.log_rotation
    if getattr(args, "log_retention", None) is not None:
        updates["log_retention"] = args.log_retention

    if not updates:
        return config

    return dataclass_replace(config, **updates)


def create_config_from_args(
    args: argparse.Namespace,
    environ: Mapping[str, str] | None = None,
) -> tuple[ServerConfig, list[ConfigOverride]]:
    """Create ServerConfig from CLI arguments with layered config loading.

    Returns:
        Tuple of (ServerConfig instance, list of ConfigOverride). The overrides
        list contains the values from the user config file that differ from
        the defaults.

    Raises:
        DefaultConfigError: If default.toml cannot be loaded (fatal).
        FileNotFoundError: If the user config file does not exist.
        tomllib.TOMLDecodeError: If the user config has invalid TOML syntax.
        ConfigurationError: If configuration validation fails.
    """
    config = load_default_config()
    overrides: list[ConfigOverride] = []

    if getattr(args, "config", None) is not None:
        user_config_path = Path(args.config)
        toml_data = load_config_from_toml(user_config_path)

        # Logging is not configured yet
        unknown = get_unknown_keys(toml_data)
        if unknown:
            print(f"WARNING: Unknown keys in {user_config_path}:", file=sys.stderr)
            for key in unknown:
                print(f"  - {key}", file=sys.stderr)

        config_data = process_toml_config(toml_data)
        for key, new_value in config_data.items():
            default_value = getattr(config, key)
            if default_value != new_value:
                overrides.append(ConfigOverride(key, default_value, new_value))
        if config_data:
            config = dataclass_replace(config, **config_data)

    config = merge_env(config, os.environ if environ is None else environ)
    config = merge_cli_args(config, args)

    errors = validate_config(config)
    if errors:
        raise ConfigurationError(errors)

    return config, overrides
