"""Shared utility functions for the proxy module."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Coroutine, Optional

from loguru import logger

from cryptonote_ws_proxy.proxy.constants import MAX_BACKGROUND_ERROR_LENGTH, MAX_CLOSE_REASON_LENGTH


def fire_and_forget(
    coro: Coroutine[Any, Any, Any], name: Optional[str] = None
) -> Optional[asyncio.Task]:
    """
    Run a coroutine in the background and log any exception it raises.

    Used where the caller must not wait, e.g. reporting a client send
    failure back into a session while that session's dispatch is running.

    Args:
        coro: Coroutine to run as a task.
        name: Optional task name shown in logs.

    Returns:
        The created task, or None if no event loop is running.
    """
    try:
        task = asyncio.create_task(coro, name=name)
    except RuntimeError as e:
        coro.close()
        logger.debug(f"Cannot create background task (no event loop): {e}")
        return None

    def _log_failure(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            exc_str = str(exc)
            if len(exc_str) > MAX_BACKGROUND_ERROR_LENGTH:
                exc_str = exc_str[:MAX_BACKGROUND_ERROR_LENGTH] + "... (truncated)"
            logger.error(f"Background task {t.get_name()} failed: {exc_str}")

    task.add_done_callback(_log_failure)
    return task


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """
    Cancel a task and wait for it to finish.

    A task asking to cancel itself is left running; it is expected to
    notice on its own that its work is done.
    """
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def truncate_close_reason(reason: str, max_bytes: int = MAX_CLOSE_REASON_LENGTH) -> str:
    """
    Shorten a websocket close reason to fit the close frame.

    The limit applies to the UTF-8 encoding, so a multi-byte character
    that would be cut in half is dropped entirely.
    """
    encoded = reason.encode("utf-8")
    if len(encoded) <= max_bytes:
        return reason
    return encoded[:max_bytes].decode("utf-8", errors="ignore")
