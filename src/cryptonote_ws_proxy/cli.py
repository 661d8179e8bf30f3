"""Command-line interface for the WebSocket CryptoNote proxy."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from loguru import logger

from cryptonote_ws_proxy import __version__

SAMPLE_CONFIG = """# WebSocket -> CryptoNote pool proxy configuration
# Every section is optional; omitted values use the built-in defaults.

proxy:
  bind_host: "0.0.0.0"            # Listen on all interfaces
  bind_port: 8080                 # WebSocket port for browser miners
  default_pool: "scala"           # Pool used when the client URL has no ?pool=
  debug: false                    # Log raw frames and pool lines

# Clients pick a pool with ws://proxy:8080/?pool=<key>
pools:
  - key: "scala"
    name: "Scala Project Official Pool"
    host: "mine.scalaproject.io"
    port: 3333
    algorithm: "panthera"

  - key: "herominers"
    name: "HeroMiners Scala Pool"
    host: "scala.herominers.com"
    port: 10130
    algorithm: "panthera"

  - key: "fairpool"
    name: "FairPool Scala"
    host: "scala.fairpool.xyz"
    port: 4455
    algorithm: "panthera"

session:
  connect_timeout: 30             # Pool connect timeout (seconds)
  upstream_idle_timeout: 60       # Drop a silent pool connection that is not logged in
  keepalive_interval: 120         # getjob keepalive while logged in (seconds)
  heartbeat_interval: 60          # Client ping / cleanup sweep (seconds)
  stale_timeout: 900              # Close sessions inactive this long (seconds)
  login_grace_period: 120         # Reconnect if no login within this time (seconds)
  pending_request_ttl: 300        # Forget unanswered pool requests after (seconds)
  default_worker: "web"           # Worker name when the wallet has no ".worker"
  send_rigid: true                # Send the worker as "rigid" in login
  strict_targets: false           # Drop jobs with a missing/invalid target
  relogin_on_reconnect: true      # Log in again after a pool reconnect
  reconnect:
    base_delay: 5
    max_delay: 120
    growth_factor: 1.5
    cap_exponent: 5
    max_jitter: 2
    max_attempts: 5

tcp:
  tcp_keepalive: true             # Enable TCP keepalive on pool connections
  keepalive_idle: 30              # Seconds before sending keepalive probes
  keepalive_interval: 10          # Seconds between keepalive probes
  keepalive_count: 3              # Failed probes before connection is dead

logging:
  level: "INFO"                   # DEBUG, INFO, WARNING, ERROR
  library_level: "WARNING"        # websockets and asyncio library messages
  file: null                      # Log file path (null for console only)
  rotation: "50 MB"               # Log rotation size
  retention: 10                   # Keep N rotated files
  format: "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}"

stats:
  interval: 600                   # Seconds between statistics log blocks
"""


def find_config_file() -> Optional[Path]:
    """
    Find the configuration file in common locations.

    Returns:
        Path to config file or None.
    """
    search_paths = [
        Path("config.yaml"),
        Path("config.yml"),
        Path.home() / ".config" / "cryptonote-ws-proxy" / "config.yaml",
        Path("/etc/cryptonote-ws-proxy/config.yaml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def _load(config_path: Optional[Path]):
    """Load the given or discovered config file, or fall back to defaults."""
    from cryptonote_ws_proxy.config import ConfigError, config_from_environment, load_config

    if config_path is None:
        config_path = find_config_file()
    try:
        if config_path is None:
            click.echo("No configuration file found, using built-in defaults")
            return config_from_environment()
        click.echo(f"Using configuration: {config_path}")
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="cryptonote-ws-proxy")
def main():
    """WebSocket to CryptoNote pool proxy for browser miners."""
    pass


@main.command()
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("-p", "--port", type=click.IntRange(1, 65535), default=None, help="Override listen port")
@click.option("-d", "--debug", is_flag=True, help="Log raw frames and pool lines")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override log level from config",
)
def start(
    config_path: Optional[Path], port: Optional[int], debug: bool, log_level: Optional[str]
):
    """Start the proxy in the foreground."""
    from cryptonote_ws_proxy.logging.setup import setup_logging
    from cryptonote_ws_proxy.proxy.server import run_proxy

    config = _load(config_path)

    if port is not None:
        config.proxy.bind_port = port
    if debug:
        config.proxy.debug = True
        config.logging.level = "DEBUG"
    if log_level:
        config.logging.level = log_level.upper()

    setup_logging(config.logging)
    logger.info(f"Starting cryptonote-ws-proxy {__version__}")

    try:
        exit_code = asyncio.run(run_proxy(config))
    except KeyboardInterrupt:
        click.echo("\nShutdown requested...")
        exit_code = 0
    except OSError as e:
        logger.error(f"Cannot start proxy: {e}")
        exit_code = 1

    logger.info("Proxy shutdown complete")
    sys.exit(exit_code)


@main.command()
@click.argument("config_path", type=click.Path(exists=True, path_type=Path))
def validate(config_path: Path):
    """Validate a configuration file."""
    from cryptonote_ws_proxy.config.loader import load_config, validate_config

    is_valid, message = validate_config(config_path)

    if not is_valid:
        click.echo(f"✗ {message}", err=True)
        sys.exit(1)

    click.echo(f"✓ {message}")
    config = load_config(config_path)

    click.echo("\nPools:")
    for pool in config.pools:
        marker = " (default)" if pool.key == config.proxy.default_pool else ""
        click.echo(f"  - {pool.key}: {pool.name} {pool.address} [{pool.algorithm}]{marker}")

    click.echo(f"\nProxy: ws://{config.proxy.bind_host}:{config.proxy.bind_port}")


@main.command()
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
def pools(config_path: Optional[Path]):
    """List the configured pools and how clients select them."""
    config = _load(config_path)
    host = "localhost" if config.proxy.bind_host in ("0.0.0.0", "::") else config.proxy.bind_host

    for pool in config.pools:
        marker = " (default)" if pool.key == config.proxy.default_pool else ""
        click.echo(f"{pool.key}{marker}")
        click.echo(f"  {pool.name} - {pool.address} ({pool.algorithm}, {pool.protocol})")
        click.echo(f"  ws://{host}:{config.proxy.bind_port}/?pool={pool.key}")


@main.command()
def init():
    """Create a sample configuration file."""
    dest_path = Path("config.yaml")
    if dest_path.exists():
        if not click.confirm(f"{dest_path} already exists. Overwrite?"):
            click.echo("Skipping config file creation.")
            return

    dest_path.write_text(SAMPLE_CONFIG, encoding="utf-8")
    click.echo(f"Created {dest_path}")
    click.echo("Edit this file to configure your pools.")


if __name__ == "__main__":
    main()
