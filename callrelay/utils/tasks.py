"""Spawn asyncio background tasks that cannot fail silently."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Exception that can be raised inside a task to safely exit it."""

    pass


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())
        raise


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that raises SystemExit on task exception."""
    if task.cancelled():
        return
    exception = task.exception()
    if exception is not None and not isinstance(exception, SafeTaskExitError):
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{exception!r}',
        )
        raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine in the background and exit if it fails.

    The traceback of any exception raised inside the task is logged and the
    program exits. Otherwise, exceptions in background tasks that are never
    awaited, such as a server message listener, go unnoticed and the
    program hangs.

    Tasks can raise [`SafeTaskExitError`][callrelay.utils.tasks.SafeTaskExitError]
    to signal the task is finished but should not cause a system exit.

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        name: Optional name of the task.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
        name=name,
    )
    task.add_done_callback(exit_on_error)
    return task
