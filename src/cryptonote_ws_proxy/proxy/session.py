"""Client session state machine - one per websocket connection."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from loguru import logger

from cryptonote_ws_proxy.cryptonote.messages import CryptoNoteMethods, Job
from cryptonote_ws_proxy.proxy import translator
from cryptonote_ws_proxy.proxy.constants import (
    CLOSE_NORMAL,
    REASON_INACTIVE,
    REASON_MAX_RECONNECTS,
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
    HeartbeatTick,
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
    UpstreamIdleTimeout,
    UpstreamMessageReceived,
)
from cryptonote_ws_proxy.proxy.reconnect import ReconnectionScheduler
from cryptonote_ws_proxy.stratum.messages import ProxyStatus, StratumErrors, error_object

if TYPE_CHECKING:
    from cryptonote_ws_proxy.config.models import PoolConfig, SessionConfig


class SessionState(Enum):
    """Lifecycle states of a session's upstream leg."""

    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOGGING_IN = "logging_in"
    LOGGED_IN = "logged_in"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    CLOSED = "closed"


@dataclass
class PendingRequest:
    """An upstream request waiting for its response."""

    upstream_method: str
    # None for requests the proxy makes on its own (keepalive, re-login)
    original_method: Optional[str]
    original_id: Any
    sent_at: float

    @property
    def from_client(self) -> bool:
        return self.original_method is not None


class Session:
    """
    State for one client and its upstream pool leg.

    All mutation happens in :meth:`handle`, which takes one event and
    returns the effects to carry out. Nothing here touches a socket or a
    timer, so the whole state machine can be driven from tests.

    Upstream-bound messages are transmitted only while the pool transport
    is open. Otherwise they are queued and flushed, in order, when the
    next connection succeeds.
    """

    def __init__(
        self,
        connection_id: int,
        client_address: str,
        pool_key: str,
        pool: PoolConfig,
        settings: SessionConfig,
        user_agent: str,
        clock: Callable[[], float] = time.time,
        reconnect: Optional[ReconnectionScheduler] = None,
    ):
        """
        Initialize a session.

        Args:
            connection_id: Process-unique connection number.
            client_address: Client "host:port" for logging.
            pool_key: Key the client selected the pool with.
            pool: Pool the upstream leg connects to.
            settings: Session timers and translation options.
            user_agent: Agent string sent in login requests.
            clock: Time source, replaceable in tests.
            reconnect: Backoff scheduler; built from ``settings`` if omitted.
        """
        self.connection_id = connection_id
        self.client_address = client_address
        self.pool_key = pool_key
        self.pool = pool
        self.settings = settings
        self.user_agent = user_agent
        self.clock = clock
        self.reconnect = reconnect or ReconnectionScheduler.from_config(settings.reconnect)

        self.state = SessionState.INITIALIZING
        self.login_id: Optional[str] = None
        self.last_login_id: Optional[str] = None
        self.job: Optional[Job] = None
        self.wallet: Optional[str] = None
        self.worker: Optional[str] = None

        self.pending: Dict[int, PendingRequest] = {}
        self.queue: List[dict] = []
        self._request_ids = itertools.count(1)

        self.client_open = True
        self.upstream_open = False
        self.has_connected = False
        self.reconnect_scheduled = False
        self.close_reason: Optional[str] = None

        self.submitted = 0
        self.accepted = 0
        self.rejected = 0

        now = clock()
        self.created_at = now
        self.last_activity = now
        self.state_since = now

    @property
    def name(self) -> str:
        """Log prefix."""
        return str(self.connection_id)

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def logged_in(self) -> bool:
        return self.state is SessionState.LOGGED_IN

    @property
    def request_login_id(self) -> Optional[str]:
        """Pool session id for submit and getjob requests.

        While the pool is unreachable, requests are queued under the last
        id the pool handed out.
        """
        if self.logged_in:
            return self.login_id
        if not self.upstream_open:
            return self.last_login_id
        return None

    @property
    def difficulty(self) -> int:
        """Difficulty of the current job (1 when there is none)."""
        return self.job.difficulty if self.job else 1

    def set_state(self, state: SessionState) -> None:
        """Move to a new state, keeping the login id invariant."""
        if state is self.state:
            return
        logger.debug(f"[{self.name}] State {self.state.value} -> {state.value}")
        self.state = state
        self.state_since = self.clock()
        if state is not SessionState.LOGGED_IN:
            self.login_id = None

    # -- Event dispatch --------------------------------------------------

    def handle(self, event: Event) -> list[Effect]:
        """
        Apply one event and return the effects it produces.

        Events arriving after the session is closed are ignored.
        """
        if self.closed:
            return []

        if isinstance(event, SessionStarted):
            return self._on_started()
        if isinstance(event, ClientMessageReceived):
            self.touch()
            return translator.translate_inbound(self, event.message)
        if isinstance(event, ClientProtocolError):
            self.touch()
            logger.warning(f"[{self.name}] Invalid client message: {event.error}")
            return [self.reply(None, error=error_object(f"Invalid message: {event.error}"))]
        if isinstance(event, ClientPong):
            self.touch()
            return []
        if isinstance(event, ClientClosed):
            self.client_open = False
            return self.close(event.reason)
        if isinstance(event, UpstreamConnected):
            return self._on_upstream_connected()
        if isinstance(event, UpstreamConnectFailed):
            return self._on_connect_failed(event.error)
        if isinstance(event, UpstreamMessageReceived):
            self.touch()
            return translator.translate_outbound(self, event.message)
        if isinstance(event, UpstreamClosed):
            return self._on_upstream_lost(event.reason, event.had_error)
        if isinstance(event, UpstreamIdleTimeout):
            return self._on_idle_timeout()
        if isinstance(event, ReconnectDue):
            return self._on_reconnect_due()
        if isinstance(event, KeepaliveDue):
            return self._on_keepalive()
        if isinstance(event, HeartbeatTick):
            return self._on_heartbeat(event.now)
        if isinstance(event, CloseRequested):
            return self.close(event.reason, event.code)

        raise TypeError(f"Unhandled session event: {event!r}")

    def touch(self) -> None:
        """Record activity from either leg."""
        self.last_activity = self.clock()

    # -- Upstream leg lifecycle ------------------------------------------

    def _on_started(self) -> list[Effect]:
        effects: list[Effect] = [
            self.status("initializing", pool=self.pool_key, algorithm=self.pool.algorithm)
        ]
        return effects + self._connect()

    def _connect(self) -> list[Effect]:
        self.set_state(SessionState.CONNECTING)
        logger.info(f"[{self.name}] Connecting to pool {self.pool_key} ({self.pool.address})")
        details = {"pool": self.pool_key, "host": self.pool.host, "port": self.pool.port}
        if self.reconnect.attempts:
            details["attempt"] = self.reconnect.attempts
        return [self.status("connecting", **details), OpenUpstream()]

    def _on_upstream_connected(self) -> list[Effect]:
        if self.upstream_open:
            return []
        reconnected = self.has_connected
        self.upstream_open = True
        self.has_connected = True
        self.reconnect_scheduled = False
        self.reconnect.reset()
        self.set_state(SessionState.CONNECTED)
        logger.info(f"[{self.name}] Connected to pool {self.pool_key} ({self.pool.address})")

        effects: list[Effect] = [
            self.status(
                "connected",
                pool=self.pool_key,
                host=self.pool.host,
                port=self.pool.port,
                algorithm=self.pool.algorithm,
                protocol=self.pool.protocol,
            )
        ]

        queued, self.queue = self.queue, []
        login_queued = any(p.get("method") == CryptoNoteMethods.LOGIN for p in queued)
        if queued:
            logger.info(f"[{self.name}] Flushing {len(queued)} queued message(s) to pool")
        now = self.clock()
        for payload in queued:
            pending = self.pending.get(payload.get("id"))
            if pending is not None:
                pending.sent_at = now
            effects.extend(self._transmit(payload))

        if (
            reconnected
            and self.settings.relogin_on_reconnect
            and self.wallet
            and not login_queued
        ):
            logger.info(f"[{self.name}] Logging in again as {self.wallet}")
            effects.extend(self.send_upstream(CryptoNoteMethods.LOGIN, self.login_params()))

        effects.append(StartKeepalive(self.settings.keepalive_interval))
        return effects

    def _on_connect_failed(self, error: str) -> list[Effect]:
        self.upstream_open = False
        logger.warning(f"[{self.name}] Connection to pool {self.pool_key} failed: {error}")
        self.set_state(SessionState.ERROR)
        effects: list[Effect] = [
            self.status("error", error=f"Connection failed: {error}", pool=self.pool_key)
        ]
        return effects + self._schedule_reconnect()

    def _on_upstream_lost(self, reason: str, had_error: bool = False) -> list[Effect]:
        if not self.upstream_open:
            return []
        self.upstream_open = False
        logger.warning(f"[{self.name}] Pool connection lost: {reason}")
        self.set_state(SessionState.DISCONNECTED)

        effects: list[Effect] = [StopKeepalive()]
        effects.extend(self._fail_pending("Pool connection lost"))
        effects.append(
            self.status("disconnected", reason="Connection error" if had_error else reason)
        )
        if not self.client_open:
            return effects + self.close(reason)
        return effects + self._schedule_reconnect()

    def _schedule_reconnect(self) -> list[Effect]:
        if self.reconnect_scheduled:
            return []
        if self.state is not SessionState.DISCONNECTED:
            self.set_state(SessionState.DISCONNECTED)
        delay = self.reconnect.next_delay()
        if delay is None:
            logger.error(
                f"[{self.name}] Giving up on pool {self.pool_key} after "
                f"{self.reconnect.max_attempts} reconnection attempts"
            )
            return self.close(REASON_MAX_RECONNECTS)
        self.reconnect_scheduled = True
        attempt = self.reconnect.attempts
        logger.info(f"[{self.name}] Reconnecting to pool in {delay:.1f}s (attempt {attempt})")
        return [ScheduleReconnect(delay=delay, attempt=attempt)]

    def _on_reconnect_due(self) -> list[Effect]:
        self.reconnect_scheduled = False
        if self.upstream_open or not self.client_open:
            return []
        return self._connect()

    def _on_idle_timeout(self) -> list[Effect]:
        if self.logged_in:
            logger.debug(f"[{self.name}] Pool idle but logged in, keeping connection")
            return []
        if not self.upstream_open:
            return []
        logger.warning(f"[{self.name}] Pool idle before login, dropping connection")
        reason = "Pool idle timeout"
        return [CloseUpstream(reason)] + self._on_upstream_lost(reason)

    def _on_keepalive(self) -> list[Effect]:
        if not (self.logged_in and self.upstream_open):
            return []
        logger.debug(f"[{self.name}] Sending keepalive getjob")
        return self.send_upstream(CryptoNoteMethods.GETJOB, {"id": self.login_id})

    def _on_heartbeat(self, now: float) -> list[Effect]:
        idle = now - self.last_activity
        if idle > self.settings.stale_timeout:
            logger.warning(f"[{self.name}] Inactive for {idle / 60:.0f}min, closing")
            return self.close(REASON_INACTIVE)

        effects: list[Effect] = []
        if self.client_open:
            effects.append(PingClient())

        if (
            self.state is SessionState.CONNECTED
            and now - self.state_since > self.settings.login_grace_period
        ):
            logger.warning(f"[{self.name}] Stuck in connected state, attempting recovery")
            reason = "Login not attempted"
            effects.append(CloseUpstream(reason))
            effects.extend(self._on_upstream_lost(reason))

        effects.extend(self.expire_pending(now))
        return effects

    # -- Sending ---------------------------------------------------------

    def next_request_id(self) -> int:
        return next(self._request_ids)

    def send_upstream(
        self,
        method: str,
        params: Any,
        original_method: Optional[str] = None,
        original_id: Any = None,
    ) -> list[Effect]:
        """
        Assign an upstream id, record the correlation and send or queue.

        Args:
            method: Pool method name.
            params: Pool parameters.
            original_method: Client method this was translated from, if any.
            original_id: Client request id to answer with.
        """
        request_id = self.next_request_id()
        self.pending[request_id] = PendingRequest(
            upstream_method=method,
            original_method=original_method,
            original_id=original_id,
            sent_at=self.clock(),
        )
        payload = {"id": request_id, "method": method, "params": params}

        if self.upstream_open:
            return self._transmit(payload)

        self.queue.append(payload)
        logger.info(f"[{self.name}] Pool not connected, queued {method} ({len(self.queue)} queued)")
        return [
            self.status(
                "queued", message=f"Queued CryptoNote message: {method}", queue_size=len(self.queue)
            )
        ]

    def _transmit(self, payload: dict) -> list[Effect]:
        if payload.get("method") == CryptoNoteMethods.LOGIN:
            self.set_state(SessionState.LOGGING_IN)
        return [SendUpstream(payload)]

    def login_params(self) -> dict:
        """Login parameters for the stored wallet and worker."""
        params = {
            "login": self.wallet,
            "pass": self.worker,
            "agent": self.user_agent,
        }
        if self.settings.send_rigid:
            params["rigid"] = self.worker
        return params

    def reply(self, request_id: Any, result: Any = None, error: Optional[dict] = None) -> SendClient:
        """Build a response to a client request."""
        return SendClient({"id": request_id, "result": result, "error": error})

    def status(self, status: str, **details: Any) -> SendClient:
        """Build a proxy status notification."""
        return SendClient(ProxyStatus(status=status, details=details).to_dict())

    # -- Correlation -----------------------------------------------------

    def take_pending(self, request_id: Any) -> Optional[PendingRequest]:
        """Remove and return the pending entry for an upstream response."""
        if isinstance(request_id, bool) or not isinstance(request_id, int):
            return None
        return self.pending.pop(request_id, None)

    def expire_pending(self, now: float) -> list[Effect]:
        """Drop correlation entries older than the retention window."""
        ttl = self.settings.pending_request_ttl
        expired = [rid for rid, p in self.pending.items() if now - p.sent_at > ttl]
        effects: list[Effect] = []
        for rid in expired:
            pending = self.pending.pop(rid)
            logger.debug(f"[{self.name}] Expired pending {pending.upstream_method} request {rid}")
            if pending.from_client:
                effects.append(
                    self.reply(pending.original_id, error=error_object("Pool did not respond"))
                )
        return effects

    def _fail_pending(self, message: str) -> list[Effect]:
        """Answer client requests that were already sent on a dead connection."""
        queued_ids = {p.get("id") for p in self.queue}
        effects: list[Effect] = []
        for rid in [rid for rid in self.pending if rid not in queued_ids]:
            pending = self.pending.pop(rid)
            if pending.from_client:
                effects.append(self.reply(pending.original_id, error=error_object(message)))
        return effects

    # -- Login bookkeeping used by the translator ------------------------

    def mark_logged_in(self, login_id: str) -> None:
        self.set_state(SessionState.LOGGED_IN)
        self.login_id = login_id
        self.last_login_id = login_id

    def mark_login_failed(self) -> None:
        self.set_state(SessionState.ERROR)
        self.last_login_id = None

    # -- Teardown --------------------------------------------------------

    def close(self, reason: str, code: int = CLOSE_NORMAL) -> list[Effect]:
        """
        Tear the session down. Safe to call more than once.

        Returns:
            Effects releasing both legs and the timers, or nothing if
            the session was already closed.
        """
        if self.closed:
            return []
        logger.info(f"[{self.name}] Closing session: {reason}")
        self.set_state(SessionState.CLOSED)
        self.close_reason = reason
        self.upstream_open = False
        self.reconnect_scheduled = False
        self.pending.clear()
        self.queue.clear()
        return [
            CancelReconnect(),
            StopKeepalive(),
            CloseUpstream(reason),
            CloseSession(reason=reason, code=code),
        ]

    def snapshot(self) -> dict:
        """Per-session view used by the statistics collector."""
        return {
            "id": self.connection_id,
            "pool": self.pool_key,
            "state": self.state.value,
            "submitted": self.submitted,
            "accepted": self.accepted,
            "rejected": self.rejected,
        }
