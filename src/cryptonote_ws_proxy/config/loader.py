"""Configuration loading, environment overrides and validation."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from cryptonote_ws_proxy.config.models import Config

ENV_PREFIX = "CRYPTONOTE_WS_PROXY_"

# Environment variable suffix -> (section, field)
ENV_OVERRIDES: Dict[str, Tuple[str, str]] = {
    "BIND_HOST": ("proxy", "bind_host"),
    "BIND_PORT": ("proxy", "bind_port"),
    "DEFAULT_POOL": ("proxy", "default_pool"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FILE": ("logging", "file"),
}


class ConfigError(Exception):
    """Configuration error."""

    pass


def read_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read the raw YAML mapping from a configuration file.

    Raises:
        ConfigError: If the file is missing, unreadable, empty or not a mapping.
    """
    path = Path(path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    if not path.is_file():
        raise ConfigError(f"Configuration path is not a file: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file: {e}") from e

    if raw_config is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(raw_config, dict):
        raise ConfigError(
            f"Configuration file must contain a YAML mapping (dict), "
            f"got {type(raw_config).__name__}"
        )

    return raw_config


def apply_env_overrides(
    raw_config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> List[str]:
    """
    Overlay ``CRYPTONOTE_WS_PROXY_*`` variables onto a raw configuration.

    Values are left as strings; model validation coerces them. Empty
    variables are ignored.

    Args:
        raw_config: Raw mapping, modified in place.
        environ: Variables to read, ``os.environ`` by default.

    Returns:
        Names of the variables that were applied.
    """
    if environ is None:
        environ = os.environ

    applied = []
    for suffix, (section, field) in ENV_OVERRIDES.items():
        name = ENV_PREFIX + suffix
        value = environ.get(name)
        if not value:
            continue
        current = raw_config.get(section)
        if not isinstance(current, dict):
            current = {}
            raw_config[section] = current
        current[field] = value
        applied.append(name)
    return applied


def _validate(raw_config: Dict[str, Any]) -> Config:
    try:
        return Config.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(
            "Configuration validation failed:\n" + format_validation_errors(e)
        ) from e


def load_config(path: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load and validate configuration from a YAML file.

    Sections that are left out fall back to their defaults, so a file that
    only lists ``pools`` is valid. Environment overrides win over the file.

    Args:
        path: Path to the configuration file.
        environ: Variables to read overrides from, ``os.environ`` by default.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or the configuration is invalid.
    """
    raw_config = read_config_file(path)
    apply_env_overrides(raw_config, environ)
    return _validate(raw_config)


def config_from_environment(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Built-in defaults with environment overrides, for runs without a file."""
    raw_config: Dict[str, Any] = {}
    apply_env_overrides(raw_config, environ)
    return _validate(raw_config)


def format_validation_errors(error: ValidationError) -> str:
    """Flatten pydantic errors into one indented line per problem."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"]) or "(root)"
        lines.append(f"  - {loc}: {item['msg']}")
    return "\n".join(lines)


def validate_config(
    path: Union[str, Path], environ: Optional[Mapping[str, str]] = None
) -> tuple[bool, str]:
    """
    Validate a configuration file.

    Args:
        path: Path to the configuration file.
        environ: Variables to read overrides from, ``os.environ`` by default.

    Returns:
        Tuple of (is_valid, message).
    """
    try:
        raw_config = read_config_file(path)
        applied = apply_env_overrides(raw_config, environ)
        config = _validate(raw_config)
    except ConfigError as e:
        return False, str(e)

    message = (
        f"Configuration valid: {len(config.pools)} pools, "
        f"default pool '{config.proxy.default_pool}'"
    )
    if applied:
        message += f" (environment overrides: {', '.join(applied)})"
    return True, message
