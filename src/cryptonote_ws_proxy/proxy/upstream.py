"""Upstream CryptoNote pool connection."""

from __future__ import annotations

import asyncio
import errno
from typing import TYPE_CHECKING, AsyncIterator, Optional

from loguru import logger

from cryptonote_ws_proxy.cryptonote.protocol import CryptoNoteProtocol, CryptoNoteProtocolError
from cryptonote_ws_proxy.proxy.constants import (
    SOCKET_READ_BUFFER_SIZE,
    UPSTREAM_DISCONNECT_TIMEOUT,
    UPSTREAM_WRITE_TIMEOUT,
)
from cryptonote_ws_proxy.proxy.events import (
    Event,
    UpstreamClosed,
    UpstreamIdleTimeout,
    UpstreamMessageReceived,
)
from cryptonote_ws_proxy.proxy.keepalive import enable_tcp_keepalive

if TYPE_CHECKING:
    from cryptonote_ws_proxy.config.models import PoolConfig, SessionConfig, TcpConfig


class UpstreamConnectionError(Exception):
    """Error connecting or writing to the upstream pool."""

    pass


def _describe_os_error(e: OSError) -> str:
    """Turn common connect failures into something an operator can act on."""
    if e.errno == errno.ECONNREFUSED:
        return "connection refused (is the pool server running?)"
    if e.errno == errno.EHOSTUNREACH:
        return "host unreachable (check network connectivity)"
    if e.errno == errno.ENETUNREACH:
        return "network unreachable (check network configuration)"
    if "getaddrinfo" in str(e).lower() or "name or service not known" in str(e).lower():
        return f"DNS resolution failed: {e}"
    return str(e) or type(e).__name__


class UpstreamConnection:
    """
    One TCP connection to a CryptoNote pool.

    A new instance is created for every connection attempt, so a late
    event from an abandoned attempt can be told apart from the live one.
    Reading is exposed as an async iterator of session events; it ends
    after yielding a single :class:`UpstreamClosed`.
    """

    def __init__(
        self,
        pool: PoolConfig,
        session_config: SessionConfig,
        tcp_config: TcpConfig,
        name: str = "upstream",
        debug: bool = False,
    ):
        """
        Initialize upstream connection.

        Args:
            pool: Pool to connect to.
            session_config: Connect and idle timeouts.
            tcp_config: Socket keepalive settings.
            name: Log prefix (the owning session's id).
            debug: Log every line sent and received.
        """
        self.pool = pool
        self.session_config = session_config
        self.tcp_config = tcp_config
        self.name = name
        self.debug = debug

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._protocol = CryptoNoteProtocol(name)
        self._closed = False

    @property
    def connected(self) -> bool:
        """Check if the socket is open."""
        return self._writer is not None and not self._closed

    async def connect(self) -> None:
        """
        Open the TCP connection to the pool.

        Raises:
            UpstreamConnectionError: If the pool cannot be reached in time.
        """
        logger.debug(f"[{self.name}] Opening TCP connection to {self.pool.address}")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.pool.host, self.pool.port),
                timeout=self.session_config.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamConnectionError(
                f"timed out after {self.session_config.connect_timeout:.0f}s"
            ) from e
        except OSError as e:
            raise UpstreamConnectionError(_describe_os_error(e)) from e

        if self._closed:
            # close() raced with the connect; do not leak the socket
            await self.close()
            raise UpstreamConnectionError("connection abandoned")

        enable_tcp_keepalive(self._writer, self.tcp_config, self.name)
        self._protocol.reset_buffer()

    async def send(self, payload: dict) -> None:
        """
        Send one JSON-RPC object as a line.

        Raises:
            UpstreamConnectionError: If not connected or the write fails.
        """
        if not self.connected:
            raise UpstreamConnectionError("Not connected")
        data = self._protocol.encode(payload)
        if self.debug:
            logger.debug(f"[{self.name}] -> pool: {data.decode(errors='replace').rstrip()}")
        try:
            self._writer.write(data)
            await asyncio.wait_for(self._writer.drain(), timeout=UPSTREAM_WRITE_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise UpstreamConnectionError("send timeout") from e
        except OSError as e:
            raise UpstreamConnectionError(f"send error: {e}") from e

    async def read_events(self) -> AsyncIterator[Event]:
        """
        Yield session events for everything read from the pool.

        An idle timeout is reported and reading continues; whether that
        is fatal is up to the session.
        """
        if self._reader is None:
            yield UpstreamClosed(reason="Not connected", had_error=True)
            return

        while not self._closed:
            try:
                data = await asyncio.wait_for(
                    self._reader.read(SOCKET_READ_BUFFER_SIZE),
                    timeout=self.session_config.upstream_idle_timeout,
                )
            except asyncio.TimeoutError:
                yield UpstreamIdleTimeout()
                continue
            except OSError as e:
                yield UpstreamClosed(reason=f"Read error: {e}", had_error=True)
                return

            if not data:
                yield UpstreamClosed(reason="Pool connection closed")
                return

            try:
                messages = self._protocol.feed_data(data)
            except CryptoNoteProtocolError as e:
                yield UpstreamClosed(reason=str(e), had_error=True)
                return

            for message in messages:
                if self.debug:
                    logger.debug(f"[{self.name}] <- pool: {message.to_dict()}")
                yield UpstreamMessageReceived(message)

        yield UpstreamClosed(reason="Connection closed by proxy")

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        self._closed = True
        writer, self._writer = self._writer, None
        if writer is None:
            return
        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=UPSTREAM_DISCONNECT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug(f"[{self.name}] Timeout waiting for pool socket to close")
        except OSError as e:
            logger.debug(f"[{self.name}] Error closing pool socket: {e}")
