"""TCP socket options for upstream pool connections."""

from __future__ import annotations

import socket
import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    import asyncio

    from cryptonote_ws_proxy.config.models import TcpConfig


def enable_tcp_keepalive(
    writer: asyncio.StreamWriter,
    config: TcpConfig,
    connection_name: str = "upstream",
) -> bool:
    """
    Tune the pool socket: TCP_NODELAY plus OS-level keepalive probes.

    Pool lines are small and latency matters for share submission, so
    Nagle's algorithm is disabled. Keepalive probes let the kernel notice
    a dead pool between keepalive getjob requests.

    Args:
        writer: StreamWriter wrapping the pool socket.
        config: TCP settings.
        connection_name: Name for logging purposes.

    Returns:
        True if the options were applied.
    """
    sock = writer.get_extra_info("socket")
    if sock is None:
        logger.debug(f"[{connection_name}] No socket available for tuning")
        return False

    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except (OSError, AttributeError) as e:
        logger.debug(f"[{connection_name}] TCP_NODELAY not available: {e}")

    if not config.tcp_keepalive:
        return True

    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if sys.platform == "linux":
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, config.keepalive_idle)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, config.keepalive_interval)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPCNT, config.keepalive_count)
        elif sys.platform == "darwin":
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, config.keepalive_idle)
        elif sys.platform == "win32":
            sock.ioctl(
                socket.SIO_KEEPALIVE_VALS,
                (1, config.keepalive_idle * 1000, config.keepalive_interval * 1000),
            )
    except (OSError, AttributeError, ValueError) as e:
        logger.warning(f"[{connection_name}] Failed to enable TCP keepalive: {e}")
        return False

    logger.debug(
        f"[{connection_name}] TCP keepalive enabled: idle={config.keepalive_idle}s, "
        f"interval={config.keepalive_interval}s, count={config.keepalive_count}"
    )
    return True
