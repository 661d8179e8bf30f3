"""Logging configuration module."""

from cryptonote_ws_proxy.logging.setup import LoguruHandler, route_library_logging, setup_logging

__all__ = ["LoguruHandler", "route_library_logging", "setup_logging"]
