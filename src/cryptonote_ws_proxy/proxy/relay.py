"""Runs a Session against real transports and timers."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional, Protocol, Union

from loguru import logger
from websockets.exceptions import ConnectionClosed

from cryptonote_ws_proxy.proxy.constants import (
    CLIENT_PONG_TIMEOUT,
    REASON_INTERNAL_ERROR,
)
from cryptonote_ws_proxy.proxy.events import (
    CancelReconnect,
    ClientClosed,
    ClientMessageReceived,
    ClientPong,
    ClientProtocolError,
    CloseRequested,
    CloseSession,
    CloseUpstream,
    Effect,
    Event,
    KeepaliveDue,
    OpenUpstream,
    PingClient,
    ReconnectDue,
    ScheduleReconnect,
    SendClient,
    SendUpstream,
    SessionStarted,
    StartKeepalive,
    StopKeepalive,
    UpstreamClosed,
    UpstreamConnected,
    UpstreamConnectFailed,
)
from cryptonote_ws_proxy.proxy.upstream import UpstreamConnection, UpstreamConnectionError
from cryptonote_ws_proxy.proxy.utils import cancel_task, fire_and_forget, truncate_close_reason
from cryptonote_ws_proxy.stratum.protocol import StratumProtocol, StratumProtocolError

if TYPE_CHECKING:
    from websockets.asyncio.server import ServerConnection

    from cryptonote_ws_proxy.proxy.registry import SessionRegistry
    from cryptonote_ws_proxy.proxy.session import Session
    from cryptonote_ws_proxy.proxy.stats import ProxyStats


class ClientChannel(Protocol):
    """What a relay needs from the client leg."""

    remote_address: str

    async def send(self, text: str) -> None: ...

    async def ping(self) -> Any: ...

    async def close(self, code: int, reason: str) -> None: ...

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]: ...


class WebSocketClient:
    """Client channel over a ``websockets`` server connection."""

    def __init__(self, connection: ServerConnection):
        self._connection = connection

    @property
    def remote_address(self) -> str:
        address = self._connection.remote_address
        if isinstance(address, tuple) and len(address) >= 2:
            return f"{address[0]}:{address[1]}"
        return str(address)

    async def send(self, text: str) -> None:
        await self._connection.send(text)

    async def ping(self) -> Any:
        """Send a ping; the returned awaitable completes when the pong arrives."""
        return await self._connection.ping(b"heartbeat")

    async def close(self, code: int, reason: str) -> None:
        await self._connection.close(code, reason)

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]:
        return self._connection.__aiter__()


UpstreamFactory = Callable[["Session"], UpstreamConnection]


class SessionRelay:
    """
    Executes the effects a Session returns.

    Events for one session are dispatched one at a time under a lock, so
    the session sees them in arrival order and never concurrently. An
    exception while handling an event closes this session only.
    """

    def __init__(
        self,
        session: Session,
        client: ClientChannel,
        upstream_factory: UpstreamFactory,
        registry: SessionRegistry,
        stats: ProxyStats,
        debug: bool = False,
    ):
        """
        Initialize the relay.

        Args:
            session: Session state machine to drive.
            client: Client leg.
            upstream_factory: Creates a fresh pool connection per attempt.
            registry: Registry the session is removed from on close.
            stats: Cumulative statistics.
            debug: Log raw client frames.
        """
        self.session = session
        self.client = client
        self.registry = registry
        self.stats = stats
        self.debug = debug
        self._upstream_factory = upstream_factory
        self._protocol = StratumProtocol()
        self._lock = asyncio.Lock()

        self._upstream: Optional[UpstreamConnection] = None
        self._upstream_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._client_closed = False
        self.finished = asyncio.Event()

    @property
    def name(self) -> str:
        return self.session.name

    # -- Entry points ----------------------------------------------------

    async def run(self) -> None:
        """Start the session and pump client frames until the client leaves."""
        await self.dispatch(SessionStarted())
        try:
            async for frame in self.client:
                await self.feed_client_frame(frame)
        except ConnectionClosed as e:
            logger.debug(f"[{self.name}] Client connection closed: {e}")
        finally:
            await self.dispatch(ClientClosed())
            await self._release()

    async def feed_client_frame(self, frame: Union[str, bytes]) -> None:
        """Decode one client frame and dispatch it."""
        if self.debug:
            logger.debug(f"[{self.name}] <- client: {frame!r}")
        try:
            message = self._protocol.parse_frame(frame)
        except StratumProtocolError as e:
            await self.dispatch(ClientProtocolError(str(e)))
            return
        await self.dispatch(ClientMessageReceived(message))

    async def close(self, reason: str, code: int) -> None:
        """Close the session from outside (server shutdown)."""
        await self.dispatch(CloseRequested(reason=reason, code=code))
        await self._release()

    async def dispatch(self, event: Event, source: Optional[UpstreamConnection] = None) -> None:
        """
        Hand one event to the session and carry out its effects.

        Args:
            event: The event.
            source: Pool connection the event came from; events from a
                connection that is no longer current are dropped.
        """
        async with self._lock:
            if source is not None and source is not self._upstream:
                logger.debug(f"[{self.name}] Dropping {type(event).__name__} from stale pool connection")
                return
            try:
                for effect in self.session.handle(event):
                    await self._apply(effect)
            except Exception as e:
                logger.exception(
                    f"[{self.name}] Error handling {type(event).__name__}: {e}"
                )
                await self._teardown_after_error()

    async def _teardown_after_error(self) -> None:
        try:
            for effect in self.session.close(REASON_INTERNAL_ERROR):
                await self._apply(effect)
        except Exception as e:
            logger.exception(f"[{self.name}] Error during teardown: {e}")
            self.registry.unregister(self.session.connection_id)
            self.finished.set()

    # -- Effects ---------------------------------------------------------

    async def _apply(self, effect: Effect) -> None:
        if isinstance(effect, SendClient):
            await self._send_client(effect.payload)
        elif isinstance(effect, SendUpstream):
            await self._send_upstream(effect.payload)
        elif isinstance(effect, OpenUpstream):
            self._open_upstream()
        elif isinstance(effect, CloseUpstream):
            await self._close_upstream(effect.reason)
        elif isinstance(effect, ScheduleReconnect):
            self._schedule_reconnect(effect.delay)
        elif isinstance(effect, CancelReconnect):
            self._cancel_reconnect()
        elif isinstance(effect, StartKeepalive):
            await cancel_task(self._keepalive_task)
            self._keepalive_task = asyncio.create_task(
                self._keepalive_loop(effect.interval), name=f"keepalive-{self.name}"
            )
        elif isinstance(effect, StopKeepalive):
            task, self._keepalive_task = self._keepalive_task, None
            await cancel_task(task)
        elif isinstance(effect, PingClient):
            fire_and_forget(self._ping_client(), name=f"ping-{self.name}")
        elif isinstance(effect, CloseSession):
            await self._close_session(effect.reason, effect.code)
        else:
            raise TypeError(f"Unhandled effect: {effect!r}")

    async def _send_client(self, payload: dict) -> None:
        if self._client_closed:
            return
        text = StratumProtocol.encode(payload)
        if self.debug:
            logger.debug(f"[{self.name}] -> client: {text}")
        try:
            await self.client.send(text)
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"[{self.name}] Send to client failed: {e}")
            self._client_closed = True
            fire_and_forget(self.dispatch(ClientClosed(reason="Client send failed")))

    async def _send_upstream(self, payload: dict) -> None:
        upstream = self._upstream
        try:
            if upstream is None:
                raise UpstreamConnectionError("Not connected")
            await upstream.send(payload)
        except UpstreamConnectionError as e:
            logger.warning(f"[{self.name}] Send to pool failed: {e}")
            fire_and_forget(
                self.dispatch(UpstreamClosed(reason=f"Send failed: {e}", had_error=True), upstream)
            )
            if upstream is not None:
                # Stays current until replaced so the loss above is not dropped as stale
                await upstream.close()

    def _open_upstream(self) -> None:
        upstream = self._upstream_factory(self.session)
        self._upstream = upstream
        self._upstream_task = fire_and_forget(
            self._run_upstream(upstream), name=f"upstream-{self.name}"
        )

    async def _run_upstream(self, upstream: UpstreamConnection) -> None:
        try:
            await upstream.connect()
        except UpstreamConnectionError as e:
            await self.dispatch(UpstreamConnectFailed(str(e)), upstream)
            return

        if upstream is not self._upstream:
            await upstream.close()
            return

        self.stats.record_upstream_connect(self.session.pool_key, reconnect=self.session.has_connected)
        await self.dispatch(UpstreamConnected(), upstream)
        async for event in upstream.read_events():
            await self.dispatch(event, upstream)
            if upstream is not self._upstream:
                break
        await upstream.close()

    async def _close_upstream(self, reason: str) -> None:
        upstream, self._upstream = self._upstream, None
        task, self._upstream_task = self._upstream_task, None
        if upstream is not None:
            logger.debug(f"[{self.name}] Closing pool connection: {reason}")
            await upstream.close()
        await cancel_task(task)

    def _schedule_reconnect(self, delay: float) -> None:
        self._cancel_reconnect()
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._reconnect_due)

    def _reconnect_due(self) -> None:
        self._reconnect_handle = None
        fire_and_forget(self.dispatch(ReconnectDue()), name=f"reconnect-{self.name}")

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def _keepalive_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.dispatch(KeepaliveDue())

    async def _ping_client(self) -> None:
        if self._client_closed:
            return
        try:
            pong_waiter = await self.client.ping()
            await asyncio.wait_for(pong_waiter, timeout=CLIENT_PONG_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug(f"[{self.name}] No pong within {CLIENT_PONG_TIMEOUT:.0f}s")
            return
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"[{self.name}] Ping failed: {e}")
            await self.dispatch(ClientClosed(reason="Ping failed"))
            return
        await self.dispatch(ClientPong())

    async def _close_session(self, reason: str, code: int) -> None:
        if self.registry.unregister(self.session.connection_id):
            self.stats.record_session_closed(self.session)
        if not self._client_closed:
            self._client_closed = True
            try:
                await self.client.close(code, truncate_close_reason(reason))
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"[{self.name}] Error closing client connection: {e}")
        self.finished.set()

    async def _release(self) -> None:
        """Make sure no timer or task outlives the session."""
        self._cancel_reconnect()
        task, self._keepalive_task = self._keepalive_task, None
        await cancel_task(task)
        await self._close_upstream("Session released")
