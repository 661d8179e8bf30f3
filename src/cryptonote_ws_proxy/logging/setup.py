"""Loguru-based logging configuration."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from cryptonote_ws_proxy.config.models import LoggingConfig

# Standard-library loggers of the libraries the proxy runs on
LIBRARY_LOGGERS = ("websockets", "asyncio")


class LoguruHandler(logging.Handler):
    """Forward standard-library log records to Loguru, tagged with the logger name."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(exception=record.exc_info).log(level, f"[{record.name}] {record.getMessage()}")


def route_library_logging(level: str) -> None:
    """
    Send websockets and asyncio messages through Loguru.

    Records below ``level`` are dropped.
    """
    for name in LIBRARY_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.handlers = [LoguruHandler()]
        library_logger.setLevel(level)
        library_logger.propagate = False


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure Loguru for the proxy process.

    Console output always goes to stderr. A rotating file sink is added
    when ``config.file`` is set. At DEBUG level tracebacks include local
    variables, which makes translation problems easier to pin down.

    Args:
        config: Logging configuration object.
    """
    logger.remove()

    verbose = config.level == "DEBUG"

    logger.add(
        sys.stderr,
        level=config.level,
        format=config.format,
        colorize=True,
        backtrace=verbose,
        diagnose=verbose,
    )

    if config.file:
        logger.add(
            config.file,
            level=config.level,
            format=config.format,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            encoding="utf-8",
        )

    route_library_logging(config.library_level)

    logger.debug(
        f"Logging configured: level={config.level}, library_level={config.library_level}, "
        f"file={config.file}"
    )
