"""Statistics tracking for client sessions and shares."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict

from loguru import logger

if TYPE_CHECKING:
    from cryptonote_ws_proxy.proxy.registry import SessionRegistry
    from cryptonote_ws_proxy.proxy.session import Session


@dataclass
class PoolStats:
    """Cumulative statistics for one pool key."""

    key: str
    upstream_connections: int = 0
    reconnections: int = 0
    sessions_closed: int = 0
    submitted: int = 0
    accepted: int = 0
    rejected: int = 0


@dataclass
class ProxyStats:
    """
    Cumulative counters that outlive individual sessions.

    Live numbers (sessions per state, shares of open sessions) are read
    from the registry when a snapshot is taken; this object only keeps
    what would otherwise be lost when a session closes. All updates
    happen on the event loop thread, so no locking is needed.
    """

    connections_accepted: int = 0
    handshakes_rejected: int = 0
    sessions_closed: int = 0
    pools: Dict[str, PoolStats] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc).astimezone())

    def _pool(self, key: str) -> PoolStats:
        if key not in self.pools:
            self.pools[key] = PoolStats(key=key)
        return self.pools[key]

    def record_connection_accepted(self) -> None:
        self.connections_accepted += 1

    def record_handshake_rejected(self) -> None:
        self.handshakes_rejected += 1

    def record_upstream_connect(self, pool_key: str, reconnect: bool) -> None:
        """Record a successful pool connection."""
        stats = self._pool(pool_key)
        stats.upstream_connections += 1
        if reconnect:
            stats.reconnections += 1

    def record_session_closed(self, session: Session) -> None:
        """Fold a closing session's share counters into the totals."""
        self.sessions_closed += 1
        stats = self._pool(session.pool_key)
        stats.sessions_closed += 1
        stats.submitted += session.submitted
        stats.accepted += session.accepted
        stats.rejected += session.rejected

    def get_uptime(self) -> str:
        """Get formatted uptime string."""
        delta = datetime.now(timezone.utc).astimezone() - self.start_time
        days = delta.days
        hours, remainder = divmod(delta.seconds, 3600)
        minutes, _seconds = divmod(remainder, 60)

        parts = []
        if days > 0:
            parts.append(f"{days}d")
        if hours > 0 or days > 0:
            parts.append(f"{hours}h")
        parts.append(f"{minutes}m")

        return " ".join(parts)


def _acceptance_rate(accepted: int, submitted: int) -> float:
    if submitted == 0:
        return 0.0
    return (accepted / submitted) * 100


def collect_stats(registry: SessionRegistry, stats: ProxyStats) -> dict:
    """
    Build an aggregate snapshot of live sessions plus cumulative totals.

    Args:
        registry: Registry holding the live sessions.
        stats: Cumulative counters.

    Returns:
        Plain dictionary suitable for logging or serialization.
    """
    states: Counter = Counter()
    pools: Dict[str, dict] = {}
    submitted = accepted = rejected = 0

    for session in registry.sessions():
        states[session.state.value] += 1
        pool = pools.setdefault(
            session.pool_key,
            {"total": 0, "connected": 0, "logged_in": 0, "submitted": 0, "accepted": 0, "rejected": 0},
        )
        pool["total"] += 1
        if session.upstream_open:
            pool["connected"] += 1
        if session.logged_in:
            pool["logged_in"] += 1
        pool["submitted"] += session.submitted
        pool["accepted"] += session.accepted
        pool["rejected"] += session.rejected
        submitted += session.submitted
        accepted += session.accepted
        rejected += session.rejected

    closed_submitted = sum(p.submitted for p in stats.pools.values())
    closed_accepted = sum(p.accepted for p in stats.pools.values())
    closed_rejected = sum(p.rejected for p in stats.pools.values())

    return {
        "total_sessions": len(registry),
        "states": dict(states),
        "pools": pools,
        "submitted": submitted,
        "accepted": accepted,
        "rejected": rejected,
        "acceptance_rate": _acceptance_rate(accepted, submitted),
        "uptime": stats.get_uptime(),
        "connections_accepted": stats.connections_accepted,
        "handshakes_rejected": stats.handshakes_rejected,
        "sessions_closed": stats.sessions_closed,
        "closed_sessions_shares": {
            "submitted": closed_submitted,
            "accepted": closed_accepted,
            "rejected": closed_rejected,
        },
        "upstream": {
            key: {"connections": p.upstream_connections, "reconnections": p.reconnections}
            for key, p in stats.pools.items()
        },
    }


def log_stats(snapshot: dict) -> None:
    """Log a snapshot produced by :func:`collect_stats`."""
    logger.info("=" * 60)
    logger.info(f"PROXY STATISTICS (uptime: {snapshot['uptime']})")
    logger.info("=" * 60)

    logger.info(
        f"Sessions: {snapshot['total_sessions']} active | "
        f"{snapshot['connections_accepted']} total connections | "
        f"{snapshot['sessions_closed']} closed | "
        f"{snapshot['handshakes_rejected']} rejected at handshake"
    )
    if snapshot["states"]:
        states_str = ", ".join(f"{state}: {n}" for state, n in sorted(snapshot["states"].items()))
        logger.info(f"States: {states_str}")

    if snapshot["submitted"] > 0:
        logger.info(
            f"Shares (active sessions): {snapshot['accepted']} accepted / "
            f"{snapshot['rejected']} rejected of {snapshot['submitted']} submitted "
            f"({snapshot['acceptance_rate']:.1f}% accepted)"
        )
    else:
        logger.info("Shares (active sessions): none submitted yet")

    closed = snapshot["closed_sessions_shares"]
    if closed["submitted"] > 0:
        logger.info(
            f"Shares (closed sessions): {closed['accepted']} accepted / "
            f"{closed['rejected']} rejected of {closed['submitted']} submitted"
        )

    for key, pool in sorted(snapshot["pools"].items()):
        logger.info("-" * 40)
        logger.info(f"Pool: {key}")
        logger.info(
            f"  Sessions: {pool['total']} | Connected: {pool['connected']} | "
            f"Logged in: {pool['logged_in']}"
        )
        logger.info(
            f"  Shares: {pool['submitted']} submitted / {pool['accepted']} accepted / "
            f"{pool['rejected']} rejected"
        )

    logger.info("=" * 60)


async def run_stats_logger(
    registry: SessionRegistry,
    stats: ProxyStats,
    interval: float,
    stop_event: asyncio.Event,
) -> None:
    """
    Log statistics on wall-clock multiples of ``interval`` until stopped.

    Args:
        registry: Registry holding the live sessions.
        stats: Cumulative counters.
        interval: Seconds between log blocks.
        stop_event: Event to signal shutdown.
    """
    while not stop_event.is_set():
        wait_seconds = max(1.0, interval - (time.time() % interval))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=wait_seconds)
            break
        except asyncio.TimeoutError:
            log_stats(collect_stats(registry, stats))
