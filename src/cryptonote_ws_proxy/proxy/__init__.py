"""Proxy core module."""

from cryptonote_ws_proxy.proxy.server import ProxyServer, run_proxy
from cryptonote_ws_proxy.proxy.registry import SessionRegistry
from cryptonote_ws_proxy.proxy.relay import SessionRelay
from cryptonote_ws_proxy.proxy.session import Session, SessionState
from cryptonote_ws_proxy.proxy.stats import ProxyStats, collect_stats
from cryptonote_ws_proxy.proxy.upstream import UpstreamConnection

__all__ = [
    "ProxyServer",
    "ProxyStats",
    "Session",
    "SessionRegistry",
    "SessionRelay",
    "SessionState",
    "UpstreamConnection",
    "collect_stats",
    "run_proxy",
]
