"""Asyncio helpers for fire-and-forget work that must not lose exceptions."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Iterable, Optional

from .logging_utils import LoggerLike, ensure_structured_logger


def _task_label(task: asyncio.Task[Any], context: Optional[str]) -> str:
    if context:
        return context
    name = None
    with contextlib.suppress(Exception):
        name = task.get_name()
    return name or "background task"


def add_task_exception_logger(
    task: asyncio.Task[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
) -> asyncio.Task[Any]:
    """Ensure task exceptions are retrieved and logged."""
    task_logger = ensure_structured_logger(logger, fallback_name="asyncio")

    def _done(done_task: asyncio.Task[Any]) -> None:
        try:
            done_task.result()
        except asyncio.CancelledError:
            return
        except Exception:
            task_logger.exception("Unhandled exception in %s", _task_label(done_task, context))

    task.add_done_callback(_done)
    return task


def create_logged_task(
    coro: Awaitable[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
    pending: Optional[set[asyncio.Task[Any]]] = None,
) -> asyncio.Task[Any]:
    """Create a task that won't lose exceptions, optionally tracking it."""
    loop = asyncio.get_running_loop()
    task = loop.create_task(coro)
    if context:
        task.set_name(context)

    add_task_exception_logger(task, logger=logger, context=context)

    if pending is not None:
        pending.add(task)
        task.add_done_callback(pending.discard)

    return task


async def wait_for_tasks(
    tasks: Iterable[asyncio.Task[Any]],
    *,
    timeout: float,
    logger: LoggerLike = None,
) -> bool:
    """Wait for ``tasks`` without cancelling them. Returns True if all finished."""

    pending = {task for task in tasks if not task.done()}
    if not pending:
        return True
    _, still_pending = await asyncio.wait(pending, timeout=timeout)
    if still_pending:
        ensure_structured_logger(logger, fallback_name="asyncio").debug(
            "%d task(s) still running after %.1fs", len(still_pending), timeout
        )
    return not still_pending


__all__ = ["add_task_exception_logger", "create_logged_task", "wait_for_tasks"]
