"""Detached asyncio work that must never unwind the caller."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)

_background_tasks: Set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)


def spawn_background(coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> asyncio.Task:
    """Schedule a coroutine on the running loop and keep a reference until it finishes."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain_background_tasks(timeout: Optional[float] = None) -> None:
    """Wait for all detached work, including tasks spawned while draining."""
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    while _background_tasks:
        remaining = None if deadline is None else max(deadline - loop.time(), 0)
        if remaining == 0:
            logger.warning("Timed out draining %s background tasks", len(_background_tasks))
            return
        await asyncio.wait(list(_background_tasks), timeout=remaining)
