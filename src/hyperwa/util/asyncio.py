from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


def spawn(
    coro: Coroutine[Any, Any, T],
    *,
    name: str,
    track: set[asyncio.Task[Any]] | None = None,
) -> asyncio.Task[T]:
    """
    Start `coro` as a named task.

    With `track`, the task is kept in that set until it finishes, so timer
    callbacks can be awaited later and are not garbage collected mid-run.
    """

    task: asyncio.Task[T] = asyncio.get_running_loop().create_task(coro, name=name)
    if track is not None:
        track.add(task)
        task.add_done_callback(track.discard)
    return task


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
    if task is None or task.done():
        return
    # A task cannot await itself; the caller unwinds on its own.
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
