"""Spawn and tear down asyncio background tasks with error handling."""
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
    if (
        not task.cancelled()
        and task.exception() is not None
        and not isinstance(task.exception(), SafeTaskExitError)
    ):
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{task.exception()!r}',
        )
        raise SystemExit(1)


def log_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that only logs a task exception.

    The exception is retrieved so asyncio does not warn about an exception
    that was never retrieved.
    """
    if not task.cancelled() and task.exception() is not None:
        logger.warning(
            f'Background task (name="{task.get_name()}") exited with '
            f'{task.exception()!r}',
        )


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    fatal: bool = True,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine safely in the background.

    Launches the coroutine as an asyncio task whose traceback is logged if
    it raises. With `fatal=True` the done callback is
    [`exit_on_error()`][huddle.utils.tasks.exit_on_error] so that a crashed
    long-running service task does not leave the process silently hung.
    With `fatal=False` the failure is only logged which is used for tasks
    whose failure must stay local (e.g., the worker of a single peer).

    Tasks can raise
    [`SafeTaskExitError`][huddle.utils.tasks.SafeTaskExitError] to signal
    the task is finished but should not cause a system exit.

    Source: https://stackoverflow.com/questions/62588076

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        name: Optional name of the task.
        fatal: Exit the process if the task raises.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
        name=name,
    )
    task.add_done_callback(exit_on_error if fatal else log_on_error)
    return task


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish.

    A no-op if `task` is `None` or is the task calling this function.
    Exceptions of tasks that already finished with an error are not
    re-raised because the task's done callback already reported them.
    """
    if task is None or task is asyncio.current_task():
        return
    if task.done():
        if not task.cancelled():
            task.exception()
        return
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, SafeTaskExitError):
        pass
