"""Pydantic configuration models with validation."""

from __future__ import annotations

import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cryptonote_ws_proxy import __version__

POOL_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")


class PoolConfig(BaseModel):
    """A CryptoNote pool that clients can select by key."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Selection key carried in the client handshake")
    name: str = Field(..., description="Human readable pool name")
    host: str = Field(..., description="Pool hostname or IP")
    port: int = Field(..., ge=1, le=65535, description="Pool TCP port")
    algorithm: str = Field(default="panthera", description="Algorithm tag sent to clients")
    protocol: str = Field(default="cryptonote", description="Upstream wire protocol")

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        """Validate the pool key is safe to use in a URL query string."""
        v = v.strip()
        if not v:
            raise ValueError("Pool key cannot be empty")
        if len(v) > 64:
            raise ValueError("Pool key must be 64 characters or less")
        if not POOL_KEY_PATTERN.match(v):
            raise ValueError(
                "Pool key must start with a letter or digit and contain only "
                "alphanumeric characters, underscores, and hyphens"
            )
        return v

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        """Only the CryptoNote login/submit/job dialect is translated."""
        v = v.strip().lower()
        if v != "cryptonote":
            raise ValueError(f"Unsupported pool protocol '{v}' (only 'cryptonote' is supported)")
        return v

    @property
    def address(self) -> str:
        """Get host:port string."""
        return f"{self.host}:{self.port}"


def default_pools() -> List[PoolConfig]:
    """Built-in Scala pools used when no pools are configured."""
    return [
        PoolConfig(
            key="scala",
            name="Scala Project Official Pool",
            host="mine.scalaproject.io",
            port=3333,
        ),
        PoolConfig(
            key="herominers",
            name="HeroMiners Scala Pool",
            host="scala.herominers.com",
            port=10130,
        ),
        PoolConfig(
            key="fairpool",
            name="FairPool Scala",
            host="scala.fairpool.xyz",
            port=4455,
        ),
    ]


class ProxyConfig(BaseModel):
    """Configuration for the WebSocket listener."""

    bind_host: str = Field(default="0.0.0.0", description="Address to bind to")
    bind_port: int = Field(default=8080, ge=0, le=65535, description="WebSocket port to listen on (0 picks a free port)")
    default_pool: str = Field(default="scala", description="Pool key used when the client names none")
    user_agent: str = Field(
        default=f"cryptonote-ws-proxy/{__version__}",
        description="Agent string sent in pool login requests",
    )
    # Pool jobs carry block template blobs of a few hundred bytes; 1 MiB is generous
    max_frame_size: int = Field(default=1024 * 1024, ge=1024, description="Maximum client frame size in bytes")
    debug: bool = Field(default=False, description="Log raw frames and lines")

    @field_validator("user_agent")
    @classmethod
    def validate_user_agent(cls, v: str) -> str:
        """Reject control characters; the agent is embedded in JSON sent upstream."""
        for char in v:
            if ord(char) < 32:
                raise ValueError(
                    f"User agent cannot contain control characters (found \\x{ord(char):02x})"
                )
        if len(v) > 256:
            raise ValueError("User agent must be 256 characters or less")
        return v


class ReconnectConfig(BaseModel):
    """Backoff settings for re-opening a session's upstream leg."""

    base_delay: float = Field(default=5.0, gt=0, description="Delay before the first retry in seconds")
    max_delay: float = Field(default=120.0, gt=0, description="Upper bound for the backoff delay in seconds")
    growth_factor: float = Field(default=1.5, ge=1.0, description="Multiplier applied per attempt")
    cap_exponent: int = Field(default=5, ge=0, description="Attempts after which the delay stops growing")
    max_jitter: float = Field(default=2.0, ge=0, description="Upper bound of random jitter in seconds")
    max_attempts: int = Field(default=5, ge=1, description="Retries before the session is closed")

    @model_validator(mode="after")
    def validate_delays(self) -> "ReconnectConfig":
        """Ensure the delay cap is not below the base delay."""
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})"
            )
        return self


class SessionConfig(BaseModel):
    """Timers and translation options applied to every client session."""

    connect_timeout: float = Field(default=30.0, gt=0, description="Upstream connect timeout in seconds")
    upstream_idle_timeout: float = Field(
        default=60.0, gt=0, description="Seconds without upstream data before the idle check fires"
    )
    # Pools close idle TCP connections; a getjob every 2 minutes keeps them open
    keepalive_interval: float = Field(default=120.0, gt=0, description="Seconds between keepalive getjob requests")
    heartbeat_interval: float = Field(default=60.0, gt=0, description="Seconds between registry sweeps")
    stale_timeout: float = Field(default=900.0, gt=0, description="Inactivity before a session is evicted")
    login_grace_period: float = Field(
        default=120.0, gt=0, description="Seconds a session may sit in 'connected' before recovery"
    )
    pending_request_ttl: float = Field(
        default=300.0, gt=0, description="Seconds an unanswered upstream request is remembered"
    )
    default_worker: str = Field(default="web", description="Worker name used when the client gives none")
    send_rigid: bool = Field(default=True, description="Send the worker name as 'rigid' in login requests")
    strict_targets: bool = Field(
        default=False, description="Drop jobs with a missing or unparseable target instead of defaulting"
    )
    relogin_on_reconnect: bool = Field(
        default=True, description="Repeat the client's login after the upstream leg reconnects"
    )
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

    @model_validator(mode="after")
    def validate_timers(self) -> "SessionConfig":
        """Sessions must outlive at least one heartbeat sweep."""
        if self.stale_timeout <= self.heartbeat_interval:
            raise ValueError(
                f"stale_timeout ({self.stale_timeout}) must be greater than "
                f"heartbeat_interval ({self.heartbeat_interval})"
            )
        return self


class TcpConfig(BaseModel):
    """Socket options for upstream pool connections."""

    tcp_keepalive: bool = Field(default=True, description="Enable TCP keepalive on pool connections")
    keepalive_idle: int = Field(default=30, ge=1, description="Seconds before sending keepalive probes")
    keepalive_interval: int = Field(default=10, ge=1, description="Seconds between keepalive probes")
    keepalive_count: int = Field(default=3, ge=1, description="Failed probes before the connection is dead")


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO", description="Log level")
    library_level: str = Field(
        default="WARNING", description="Level for the websockets and asyncio library loggers"
    )
    file: Optional[str] = Field(default=None, description="Log file path")
    rotation: str = Field(default="50 MB", description="Log rotation size")
    retention: int = Field(default=10, ge=1, description="Number of rotated files to keep")
    format: str = Field(
        default="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
        description="Log message format",
    )

    @field_validator("level", "library_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper


class StatsConfig(BaseModel):
    """Configuration for periodic statistics logging."""

    interval: int = Field(default=600, ge=10, description="Seconds between statistics log blocks")


class Config(BaseModel):
    """Main configuration model."""

    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    pools: List[PoolConfig] = Field(default_factory=default_pools, min_length=1)
    session: SessionConfig = Field(default_factory=SessionConfig)
    tcp: TcpConfig = Field(default_factory=TcpConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)

    @model_validator(mode="after")
    def validate_config(self) -> "Config":
        """Validate cross-section references."""
        self._validate_unique_pool_keys()
        self._validate_default_pool()
        return self

    def _validate_unique_pool_keys(self) -> None:
        """Ensure all pool keys are unique."""
        keys = [p.key for p in self.pools]
        if len(keys) != len(set(keys)):
            duplicates = [k for k in keys if keys.count(k) > 1]
            raise ValueError(f"Duplicate pool keys: {set(duplicates)}")

    def _validate_default_pool(self) -> None:
        """Ensure the default pool key names a configured pool."""
        if self.get_pool(self.proxy.default_pool) is None:
            raise ValueError(
                f"Default pool '{self.proxy.default_pool}' is not configured. "
                f"Available pools: {', '.join(self.get_pool_keys())}"
            )

    def get_pool(self, key: str) -> Optional[PoolConfig]:
        """Get a pool configuration by key."""
        for pool in self.pools:
            if pool.key == key:
                return pool
        return None

    def get_pool_keys(self) -> List[str]:
        """Get list of all pool keys."""
        return [p.key for p in self.pools]
