"""Fire-and-forget helpers whose failures still reach the log."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Set

from loguru import logger

_BACKGROUND: Set[asyncio.Task[Any]] = set()


def _report(task: asyncio.Task[Any]) -> None:
    _BACKGROUND.discard(task)
    if task.cancelled():
        logger.debug("background task {} cancelled", task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error("background task {} failed", task.get_name())


def spawn_logged(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
    """Schedule ``coro`` without awaiting it; exceptions are logged, not dropped."""
    task = asyncio.create_task(coro, name=name)
    _BACKGROUND.add(task)
    task.add_done_callback(_report)
    return task
