"""Typed events delivered to a Session and the effects it asks for.

A Session never performs I/O. Transports and timers turn what happens on
the wire into one of the events below, the Session returns a list of
effects, and the relay carries them out in order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from cryptonote_ws_proxy.cryptonote.messages import CryptoNoteMessage
from cryptonote_ws_proxy.proxy.constants import CLOSE_NORMAL, REASON_CLIENT_DISCONNECTED
from cryptonote_ws_proxy.stratum.messages import StratumMessage


# -- Events --------------------------------------------------------------


@dataclass(frozen=True)
class SessionStarted:
    """The client connection was accepted and registered."""


@dataclass(frozen=True)
class ClientMessageReceived:
    message: StratumMessage


@dataclass(frozen=True)
class ClientProtocolError:
    """A client frame could not be decoded."""

    error: str


@dataclass(frozen=True)
class ClientClosed:
    code: Optional[int] = None
    reason: str = REASON_CLIENT_DISCONNECTED


@dataclass(frozen=True)
class ClientPong:
    """The client answered a heartbeat ping."""


@dataclass(frozen=True)
class UpstreamConnected:
    pass


@dataclass(frozen=True)
class UpstreamConnectFailed:
    error: str


@dataclass(frozen=True)
class UpstreamMessageReceived:
    message: CryptoNoteMessage


@dataclass(frozen=True)
class UpstreamClosed:
    reason: str = "Pool connection closed"
    had_error: bool = False


@dataclass(frozen=True)
class UpstreamIdleTimeout:
    """Nothing was read from the pool for the idle timeout."""


@dataclass(frozen=True)
class ReconnectDue:
    pass


@dataclass(frozen=True)
class KeepaliveDue:
    pass


@dataclass(frozen=True)
class HeartbeatTick:
    now: float


@dataclass(frozen=True)
class CloseRequested:
    """Teardown requested from outside the session (shutdown, fatal error)."""

    reason: str
    code: int = CLOSE_NORMAL


Event = Union[
    SessionStarted,
    ClientMessageReceived,
    ClientProtocolError,
    ClientClosed,
    ClientPong,
    UpstreamConnected,
    UpstreamConnectFailed,
    UpstreamMessageReceived,
    UpstreamClosed,
    UpstreamIdleTimeout,
    ReconnectDue,
    KeepaliveDue,
    HeartbeatTick,
    CloseRequested,
]


# -- Effects -------------------------------------------------------------


@dataclass(frozen=True)
class SendClient:
    payload: dict


@dataclass(frozen=True)
class SendUpstream:
    payload: dict


@dataclass(frozen=True)
class OpenUpstream:
    pass


@dataclass(frozen=True)
class CloseUpstream:
    reason: str


@dataclass(frozen=True)
class ScheduleReconnect:
    delay: float
    attempt: int


@dataclass(frozen=True)
class CancelReconnect:
    pass


@dataclass(frozen=True)
class StartKeepalive:
    interval: float


@dataclass(frozen=True)
class StopKeepalive:
    pass


@dataclass(frozen=True)
class PingClient:
    pass


@dataclass(frozen=True)
class CloseSession:
    """Close the client leg and drop the session from the registry."""

    reason: str
    code: int = CLOSE_NORMAL


Effect = Union[
    SendClient,
    SendUpstream,
    OpenUpstream,
    CloseUpstream,
    ScheduleReconnect,
    CancelReconnect,
    StartKeepalive,
    StopKeepalive,
    PingClient,
    CloseSession,
]
