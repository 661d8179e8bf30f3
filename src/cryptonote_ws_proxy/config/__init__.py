"""Configuration module for the WebSocket CryptoNote proxy."""

from cryptonote_ws_proxy.config.models import (
    Config,
    LoggingConfig,
    PoolConfig,
    ProxyConfig,
    ReconnectConfig,
    SessionConfig,
    StatsConfig,
    TcpConfig,
)
from cryptonote_ws_proxy.config.loader import (
    ConfigError,
    config_from_environment,
    load_config,
    validate_config,
)

__all__ = [
    "Config",
    "ConfigError",
    "LoggingConfig",
    "PoolConfig",
    "ProxyConfig",
    "ReconnectConfig",
    "SessionConfig",
    "StatsConfig",
    "TcpConfig",
    "config_from_environment",
    "load_config",
    "validate_config",
]
