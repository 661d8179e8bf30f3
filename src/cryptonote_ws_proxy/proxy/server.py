"""WebSocket proxy server - accepts clients and wires up their sessions."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import parse_qs, urlsplit

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve

from cryptonote_ws_proxy.proxy.constants import (
    CLOSE_GOING_AWAY,
    CLOSE_POLICY_VIOLATION,
    REASON_SHUTDOWN,
)
from cryptonote_ws_proxy.proxy.registry import SessionRegistry
from cryptonote_ws_proxy.proxy.relay import SessionRelay, WebSocketClient
from cryptonote_ws_proxy.proxy.session import Session
from cryptonote_ws_proxy.proxy.stats import ProxyStats, collect_stats, log_stats, run_stats_logger
from cryptonote_ws_proxy.proxy.upstream import UpstreamConnection
from cryptonote_ws_proxy.proxy.utils import truncate_close_reason

if TYPE_CHECKING:
    from cryptonote_ws_proxy.config.models import Config


def _log_task_exception(task: asyncio.Task, task_name: str) -> None:
    """Add exception logging callback to a task."""

    def _callback(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc:
            logger.opt(exception=exc).error(f"{task_name} failed with exception: {exc}")

    task.add_done_callback(_callback)


def select_pool_key(path: str, default_pool: str) -> str:
    """
    Read the pool key from the handshake request path.

    ``ws://host:port/?pool=herominers`` selects ``herominers``; a missing
    or empty parameter selects ``default_pool``.
    """
    values = parse_qs(urlsplit(path).query).get("pool")
    if values and values[0]:
        return values[0]
    return default_pool


class ProxyServer:
    """
    WebSocket front end of the proxy.

    Handles:
    - Accepting client connections and selecting their pool
    - Creating and registering one session per client
    - Running the heartbeat sweep and the statistics logger
    - Graceful shutdown
    """

    def __init__(self, config: Config):
        """
        Initialize the proxy server.

        Args:
            config: Application configuration.
        """
        self.config = config
        self.registry = SessionRegistry()
        self.stats = ProxyStats()

        self._server: Optional[Server] = None
        self._stop_event = asyncio.Event()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def port(self) -> Optional[int]:
        """Port actually bound (useful when configured as 0)."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    @property
    def active_sessions(self) -> int:
        """Get count of live client sessions."""
        return len(self.registry)

    def get_stats(self) -> dict:
        """Aggregate statistics snapshot."""
        return collect_stats(self.registry, self.stats)

    async def start(self) -> None:
        """Start listening and the periodic tasks."""
        proxy = self.config.proxy
        logger.info("Starting WebSocket proxy server...")
        logger.info(
            f"Pools: {', '.join(f'{p.key} ({p.address})' for p in self.config.pools)}; "
            f"default '{proxy.default_pool}'"
        )

        self._server = await serve(
            self._handle_connection,
            proxy.bind_host,
            proxy.bind_port,
            # Heartbeat pings are sent by the registry sweep
            ping_interval=None,
            max_size=proxy.max_frame_size,
        )

        self._heartbeat_task = asyncio.create_task(
            self.registry.run_heartbeat(self.config.session.heartbeat_interval, self._stop_event)
        )
        _log_task_exception(self._heartbeat_task, "Heartbeat task")

        self._stats_task = asyncio.create_task(
            run_stats_logger(self.registry, self.stats, self.config.stats.interval, self._stop_event)
        )
        _log_task_exception(self._stats_task, "Stats logger task")

        logger.info(f"Proxy server listening on ws://{proxy.bind_host}:{self.port}")

    async def stop(self) -> None:
        """Stop the proxy server gracefully. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping proxy server...")

        self._stop_event.set()

        if self._server is not None:
            # Stop accepting; existing clients are closed below with our own reason
            self._server.close(close_connections=False)

        for task in (self._heartbeat_task, self._stats_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        log_stats(self.get_stats())

        try:
            await asyncio.wait_for(
                self.registry.close_all(REASON_SHUTDOWN, CLOSE_GOING_AWAY), timeout=5.0
            )
        except asyncio.TimeoutError:
            logger.warning("Timeout waiting for sessions to close, forcing shutdown")

        if self._server is not None:
            await self._server.wait_closed()

        logger.info("Proxy server stopped")

    async def _handle_connection(self, connection: ServerConnection) -> None:
        """
        Handle a new client connection.

        Args:
            connection: The accepted websocket connection.
        """
        client = WebSocketClient(connection)
        path = connection.request.path if connection.request is not None else "/"

        if self._stopped:
            await connection.close(CLOSE_GOING_AWAY, REASON_SHUTDOWN)
            return

        pool_key = select_pool_key(path, self.config.proxy.default_pool)
        pool = self.config.get_pool(pool_key)
        if pool is None:
            reason = f"Invalid pool: {pool_key}. Available: {', '.join(self.config.get_pool_keys())}"
            logger.warning(f"Rejecting client {client.remote_address}: {reason}")
            self.stats.record_handshake_rejected()
            await connection.close(CLOSE_POLICY_VIOLATION, truncate_close_reason(reason))
            return

        connection_id = self.registry.next_connection_id()
        session = Session(
            connection_id=connection_id,
            client_address=client.remote_address,
            pool_key=pool_key,
            pool=pool,
            settings=self.config.session,
            user_agent=self.config.proxy.user_agent,
        )
        relay = SessionRelay(
            session,
            client,
            upstream_factory=self._create_upstream,
            registry=self.registry,
            stats=self.stats,
            debug=self.config.proxy.debug,
        )
        self.registry.register(relay)
        self.stats.record_connection_accepted()
        logger.info(
            f"[{connection_id}] Client connected from {client.remote_address} "
            f"(pool {pool_key}, {len(self.registry)} active)"
        )

        await relay.run()
        logger.info(f"[{connection_id}] Client session ended ({len(self.registry)} active)")

    def _create_upstream(self, session: Session) -> UpstreamConnection:
        return UpstreamConnection(
            session.pool,
            self.config.session,
            self.config.tcp,
            name=session.name,
            debug=self.config.proxy.debug,
        )


def _setup_signals(stop_event: asyncio.Event) -> None:
    """Set the stop event on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        return

    def _sync_handler(signum: int, frame: Any) -> None:
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, _sync_handler)
    signal.signal(signal.SIGTERM, _sync_handler)


async def run_proxy(config: Config, stop_event: Optional[asyncio.Event] = None) -> int:
    """
    Run the proxy server until a shutdown signal or a fatal error.

    An exception that escapes every handler reaches the loop's exception
    handler; it is logged as critical and the process exits non-zero.

    Args:
        config: Application configuration.
        stop_event: Optional event to signal shutdown; signal handlers
            are installed when none is given.

    Returns:
        Process exit code.
    """
    loop = asyncio.get_running_loop()
    if stop_event is None:
        stop_event = asyncio.Event()
        _setup_signals(stop_event)

    fatal: list[dict] = []

    def _fatal_handler(_loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        logger.opt(exception=exc).critical(
            f"Unhandled error in event loop: {context.get('message', 'unknown error')}"
        )
        fatal.append(context)
        stop_event.set()

    loop.set_exception_handler(_fatal_handler)

    server = ProxyServer(config)
    try:
        await server.start()
        await stop_event.wait()
        logger.info("Received shutdown signal")
    except asyncio.CancelledError:
        pass
    finally:
        await server.stop()
        loop.set_exception_handler(None)

    return 1 if fatal else 0
