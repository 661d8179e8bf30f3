"""Parsing and encoding of client websocket frames."""

from __future__ import annotations

import json
from typing import Any, Union

from cryptonote_ws_proxy.stratum.messages import (
    StratumMessage,
    StratumNotification,
    StratumRequest,
    StratumResponse,
)


class StratumProtocolError(Exception):
    """Error in client frame handling."""

    pass


class StratumProtocol:
    """
    Parses and builds client messages.

    The client leg is message-framed: every websocket frame carries exactly
    one UTF-8 JSON object, so no line buffering is needed here.
    """

    ENCODING = "utf-8"
    MAX_PARAMS_LIST_SIZE = 100

    def parse_frame(self, data: Union[str, bytes]) -> StratumMessage:
        """
        Parse a single frame into a typed message.

        Args:
            data: Frame payload (text frames arrive as str, binary as bytes).

        Returns:
            Parsed stratum message.

        Raises:
            StratumProtocolError: If the frame is not a recognizable JSON-RPC object.
        """
        try:
            if isinstance(data, bytes):
                data = data.decode(self.ENCODING)
            obj = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StratumProtocolError(f"Invalid JSON: {e}") from e

        if not isinstance(obj, dict):
            raise StratumProtocolError(f"Expected JSON object, got {type(obj).__name__}")

        return self._parse_object(obj)

    def _parse_object(self, obj: dict) -> StratumMessage:
        msg_id = obj.get("id")
        method = obj.get("method")
        params = obj.get("params", [])

        if method is not None and not isinstance(method, str):
            raise StratumProtocolError(f"Method must be a string, got {type(method).__name__}")

        if isinstance(msg_id, bool) or (msg_id is not None and not isinstance(msg_id, (int, str))):
            raise StratumProtocolError(f"Unsupported request id type: {type(msg_id).__name__}")

        # Clients are positional; tolerate a scalar or a dict of values
        if not isinstance(params, list):
            if isinstance(params, dict):
                params = list(params.values())[: self.MAX_PARAMS_LIST_SIZE]
            else:
                params = [params] if params is not None else []

        if method is not None and msg_id is not None:
            return StratumRequest(id=msg_id, method=method, params=params)

        if method is not None:
            return StratumNotification(method=method, params=params)

        if msg_id is not None and ("result" in obj or "error" in obj):
            return StratumResponse(id=msg_id, result=obj.get("result"), error=obj.get("error"))

        raise StratumProtocolError(f"Cannot determine message type: {obj}")

    @staticmethod
    def encode(obj: Any) -> str:
        """
        Encode a message or dictionary as a compact JSON text frame.

        Raises:
            StratumProtocolError: If encoding fails.
        """
        if hasattr(obj, "to_dict"):
            obj = obj.to_dict()
        try:
            return json.dumps(obj, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise StratumProtocolError(f"Failed to encode message: {e}") from e


def parse_frame(data: Union[str, bytes]) -> StratumMessage:
    """Convenience wrapper around :meth:`StratumProtocol.parse_frame`."""
    return StratumProtocol().parse_frame(data)
