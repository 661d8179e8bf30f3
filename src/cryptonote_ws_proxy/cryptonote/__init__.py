"""CryptoNote (pool side) protocol handling module."""

from cryptonote_ws_proxy.cryptonote.protocol import CryptoNoteProtocol, CryptoNoteProtocolError
from cryptonote_ws_proxy.cryptonote.messages import (
    STATUS_OK,
    CryptoNoteMessage,
    CryptoNoteMethods,
    CryptoNoteNotification,
    CryptoNoteRequest,
    CryptoNoteResponse,
    Job,
)

__all__ = [
    "STATUS_OK",
    "CryptoNoteMessage",
    "CryptoNoteMethods",
    "CryptoNoteNotification",
    "CryptoNoteProtocol",
    "CryptoNoteProtocolError",
    "CryptoNoteRequest",
    "CryptoNoteResponse",
    "Job",
]
