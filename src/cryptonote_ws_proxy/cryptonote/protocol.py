"""CryptoNote pool protocol parsing and building."""

from __future__ import annotations

import json
from typing import Optional

from loguru import logger

from cryptonote_ws_proxy.cryptonote.messages import (
    CryptoNoteMessage,
    CryptoNoteNotification,
    CryptoNoteRequest,
    CryptoNoteResponse,
)


class CryptoNoteProtocolError(Exception):
    """Error in pool protocol handling."""

    pass


class CryptoNoteProtocol:
    """
    Handles parsing and building of CryptoNote JSON-RPC lines.

    Pools speak newline-delimited JSON over TCP. Data is buffered until a
    full line is available; a line that fails to parse is logged and
    skipped without affecting the lines around it.
    """

    ENCODING = "utf-8"
    DELIMITER = b"\n"
    MAX_BUFFER_SIZE = 1024 * 1024  # A job line is well under 1 KiB

    def __init__(self, name: str = "pool"):
        """
        Initialize the protocol handler.

        Args:
            name: Label used in log messages.
        """
        self.name = name
        self._buffer = b""

    def feed_data(self, data: bytes) -> list[CryptoNoteMessage]:
        """
        Feed raw data into the buffer and extract complete messages.

        Args:
            data: Raw bytes received from the socket.

        Returns:
            List of parsed messages, in arrival order.

        Raises:
            CryptoNoteProtocolError: If the buffer would exceed its maximum size.
        """
        if len(self._buffer) + len(data) > self.MAX_BUFFER_SIZE:
            self._buffer = b""
            raise CryptoNoteProtocolError(
                f"Buffer would exceed max size ({self.MAX_BUFFER_SIZE} bytes), dropping data"
            )

        self._buffer += data

        messages = []

        while self.DELIMITER in self._buffer:
            line, self._buffer = self._buffer.split(self.DELIMITER, 1)
            if not line.strip():
                continue
            try:
                msg = self.parse_line(line)
                if msg is not None:
                    messages.append(msg)
            except CryptoNoteProtocolError as e:
                logger.warning(f"[{self.name}] Failed to parse pool message: {e}")

        return messages

    def parse_line(self, data: bytes) -> Optional[CryptoNoteMessage]:
        """
        Parse a single JSON-RPC line.

        Args:
            data: Raw bytes of a single line (without newline).

        Returns:
            Parsed message or None for a blank line.

        Raises:
            CryptoNoteProtocolError: If the line cannot be parsed.
        """
        try:
            text = data.decode(self.ENCODING).strip()
            if not text:
                return None
            obj = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CryptoNoteProtocolError(f"Invalid JSON: {e}") from e

        if not isinstance(obj, dict):
            raise CryptoNoteProtocolError(f"Expected JSON object, got {type(obj).__name__}")

        return self._parse_object(obj)

    def _parse_object(self, obj: dict) -> CryptoNoteMessage:
        msg_id = obj.get("id")
        method = obj.get("method")

        if method is not None:
            if not isinstance(method, str):
                raise CryptoNoteProtocolError(f"Method must be a string: {method!r}")
            # Some pools stamp an id on job pushes; they are still notifications
            if msg_id is None or method == "job":
                return CryptoNoteNotification(method=method, params=obj.get("params"))
            params = obj.get("params")
            return CryptoNoteRequest(
                id=msg_id, method=method, params=params if isinstance(params, dict) else {}
            )

        if "result" in obj or "error" in obj:
            error = obj.get("error")
            if error is not None and not isinstance(error, dict):
                error = {"code": -1, "message": str(error)}
            return CryptoNoteResponse(id=msg_id, result=obj.get("result"), error=error)

        raise CryptoNoteProtocolError(f"Cannot determine message type: {obj}")

    def build_request(self, id: int, method: str, params: Optional[dict] = None) -> bytes:
        """
        Build a pool request line.

        Args:
            id: Request ID.
            method: Method name.
            params: Named parameters.

        Returns:
            Encoded line with newline delimiter.
        """
        return self.encode(CryptoNoteRequest(id=id, method=method, params=params or {}).to_dict())

    def encode(self, obj: dict) -> bytes:
        """
        Encode a dictionary to a JSON line.

        Raises:
            CryptoNoteProtocolError: If encoding fails.
        """
        try:
            return json.dumps(obj, separators=(",", ":")).encode(self.ENCODING) + self.DELIMITER
        except (TypeError, ValueError) as e:
            raise CryptoNoteProtocolError(f"Failed to encode message: {e}") from e

    def reset_buffer(self) -> None:
        """Clear the internal buffer."""
        self._buffer = b""
