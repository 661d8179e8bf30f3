"""Registry of live sessions and the periodic heartbeat sweep."""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import TYPE_CHECKING, Callable, Dict, Iterator, Optional

from loguru import logger

from cryptonote_ws_proxy.proxy.events import Event, HeartbeatTick

if TYPE_CHECKING:
    from cryptonote_ws_proxy.proxy.relay import SessionRelay
    from cryptonote_ws_proxy.proxy.session import Session


class SessionRegistry:
    """
    Owns the live sessions, keyed by connection id.

    Each entry is the relay driving a session, so events routed here go
    through the same serialized dispatch as the session's own traffic.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._relays: Dict[int, SessionRelay] = {}
        self._ids = itertools.count(1)
        self.clock = clock

    def next_connection_id(self) -> int:
        """Allocate a process-unique connection id."""
        return next(self._ids)

    def register(self, relay: SessionRelay) -> None:
        connection_id = relay.session.connection_id
        if connection_id in self._relays:
            raise ValueError(f"Connection {connection_id} is already registered")
        self._relays[connection_id] = relay
        logger.debug(f"[{connection_id}] Registered ({len(self._relays)} active)")

    def unregister(self, connection_id: int) -> bool:
        """
        Remove a session. Safe to call more than once.

        Returns:
            True if the session was registered.
        """
        relay = self._relays.pop(connection_id, None)
        if relay is None:
            return False
        logger.debug(f"[{connection_id}] Unregistered ({len(self._relays)} active)")
        return True

    def get(self, connection_id: int) -> Optional[SessionRelay]:
        return self._relays.get(connection_id)

    def sessions(self) -> Iterator[Session]:
        """Iterate over a snapshot of the live sessions."""
        return iter([relay.session for relay in self._relays.values()])

    def __len__(self) -> int:
        return len(self._relays)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._relays

    async def route(self, connection_id: int, event: Event) -> bool:
        """
        Deliver an event to one session.

        Returns:
            False if no such session is registered.
        """
        relay = self._relays.get(connection_id)
        if relay is None:
            return False
        await relay.dispatch(event)
        return True

    async def sweep(self, now: Optional[float] = None) -> None:
        """
        Deliver a heartbeat tick to every live session.

        A failure in one session is logged and does not stop the sweep.
        """
        now = self.clock() if now is None else now
        for relay in list(self._relays.values()):
            try:
                await relay.dispatch(HeartbeatTick(now))
            except Exception as e:
                logger.exception(f"[{relay.session.name}] Heartbeat failed: {e}")

    async def close_all(self, reason: str, code: int) -> None:
        """Close every live session (used on shutdown)."""
        relays = list(self._relays.values())
        if relays:
            logger.info(f"Closing {len(relays)} session(s): {reason}")
        await asyncio.gather(
            *(relay.close(reason, code) for relay in relays), return_exceptions=True
        )

    async def run_heartbeat(self, interval: float, stop_event: asyncio.Event) -> None:
        """
        Sweep every ``interval`` seconds until stopped.

        Args:
            interval: Seconds between sweeps.
            stop_event: Event to signal shutdown.
        """
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                await self.sweep()
