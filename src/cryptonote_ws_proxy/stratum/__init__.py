"""Client-side (websocket) Stratum-like protocol handling module."""

from cryptonote_ws_proxy.stratum.protocol import StratumProtocol, StratumProtocolError
from cryptonote_ws_proxy.stratum.messages import (
    ProxyStatus,
    StratumErrors,
    StratumMessage,
    StratumMethods,
    StratumNotification,
    StratumRequest,
    StratumResponse,
)

__all__ = [
    "ProxyStatus",
    "StratumErrors",
    "StratumMessage",
    "StratumMethods",
    "StratumNotification",
    "StratumProtocol",
    "StratumProtocolError",
    "StratumRequest",
    "StratumResponse",
]
