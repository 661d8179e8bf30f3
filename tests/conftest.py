"""
Shared fixtures for proxy tests.

Sessions are driven with a controllable clock and a deterministic
reconnection scheduler so timer-dependent behavior can be asserted
without sleeping.
"""

from __future__ import annotations

import json

import pytest

from cryptonote_ws_proxy.config.models import PoolConfig, ReconnectConfig, SessionConfig
from cryptonote_ws_proxy.proxy.events import (
    SendClient,
    SendUpstream,
    SessionStarted,
    UpstreamConnected,
)
from cryptonote_ws_proxy.proxy.reconnect import ReconnectionScheduler
from cryptonote_ws_proxy.proxy.session import Session

WALLET = "Ssy2BnsAcJUVZZ2kTiywf61bvYjvPosXzaBcaft9RSvaNNKsFRkcKbaWjMm9fZMVtPoS2ZFmEy3ApEKvTqQXvG9ZZz"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def client_payloads(effects) -> list[dict]:
    """Payloads sent to the client, excluding proxy status notifications."""
    return [
        e.payload
        for e in effects
        if isinstance(e, SendClient) and e.payload.get("type") != "proxy_status"
    ]


def statuses(effects) -> list[str]:
    """Proxy status values sent to the client."""
    return [
        e.payload["status"]
        for e in effects
        if isinstance(e, SendClient) and e.payload.get("type") == "proxy_status"
    ]


def upstream_payloads(effects) -> list[dict]:
    """Payloads sent to the pool."""
    return [e.payload for e in effects if isinstance(e, SendUpstream)]


def of_type(effects, effect_type) -> list:
    return [e for e in effects if isinstance(e, effect_type)]


def pool_line(obj: dict) -> bytes:
    return json.dumps(obj).encode() + b"\n"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pool() -> PoolConfig:
    return PoolConfig(key="scala", name="Test Pool", host="127.0.0.1", port=3333)


@pytest.fixture
def settings() -> SessionConfig:
    return SessionConfig(reconnect=ReconnectConfig(max_attempts=3))


@pytest.fixture
def make_session(pool, settings, clock):
    """Factory for sessions with no jitter in reconnection delays."""

    def _make(connection_id: int = 1, session_settings: SessionConfig = None) -> Session:
        session_settings = session_settings or settings
        return Session(
            connection_id=connection_id,
            client_address="127.0.0.1:50000",
            pool_key=pool.key,
            pool=pool,
            settings=session_settings,
            user_agent="test-agent/1.0",
            clock=clock,
            reconnect=ReconnectionScheduler.from_config(session_settings.reconnect, rng=lambda: 0.0),
        )

    return _make


@pytest.fixture
def connected_session(make_session) -> Session:
    """A session whose pool connection is open but not logged in."""
    session = make_session()
    session.handle(SessionStarted())
    session.handle(UpstreamConnected())
    return session
