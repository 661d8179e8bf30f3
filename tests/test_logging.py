"""Tests for Loguru setup and library log routing."""

import logging
import sys

import pytest
from loguru import logger
from pydantic import ValidationError

from cryptonote_ws_proxy.config.models import LoggingConfig
from cryptonote_ws_proxy.logging.setup import LIBRARY_LOGGERS, setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    logger.remove()
    logger.add(sys.stderr)
    for name in LIBRARY_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.handlers = []
        library_logger.setLevel(logging.NOTSET)
        library_logger.propagate = True


def capture():
    messages = []
    logger.add(lambda m: messages.append(m.record["level"].name + " " + m.record["message"]), level="DEBUG")
    return messages


class TestSetupLogging:
    """Test setup_logging."""

    def test_library_records_reach_loguru(self):
        setup_logging(LoggingConfig(level="DEBUG", library_level="INFO"))
        messages = capture()

        logging.getLogger("websockets.server").info("connection open")
        logging.getLogger("websockets.server").debug("< TEXT frame")
        logging.getLogger("asyncio").warning("Executing task took 0.2 seconds")

        assert messages == [
            "INFO [websockets.server] connection open",
            "WARNING [asyncio] Executing task took 0.2 seconds",
        ]

    def test_library_level_defaults_to_warning(self):
        setup_logging(LoggingConfig())
        messages = capture()

        logging.getLogger("websockets.client").info("connection open")
        logging.getLogger("websockets.server").error("opening handshake failed")

        assert messages == ["ERROR [websockets.server] opening handshake failed"]

    def test_file_sink(self, tmp_path):
        path = tmp_path / "proxy.log"
        setup_logging(LoggingConfig(level="INFO", file=str(path)))
        logger.info("[1] Connected to pool scala")
        logger.debug("not written")
        logger.remove()

        text = path.read_text(encoding="utf-8")
        assert "[1] Connected to pool scala" in text
        assert "not written" not in text

    def test_invalid_library_level(self):
        with pytest.raises(ValidationError):
            LoggingConfig(library_level="chatty")
