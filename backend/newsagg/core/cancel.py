from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

from newsagg.core.errors import Cancelled

T = TypeVar("T")


async def until_stopped(aw: Awaitable[T], stop: asyncio.Event) -> T:
    """
    Await `aw` unless `stop` fires first.

    When the stop signal wins, the pending operation is cancelled and
    `Cancelled` is raised. Every blocking boundary of a polling round
    (HTTP retrieval, channel send, channel receive) goes through here.
    """
    if stop.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise Cancelled()

    task: asyncio.Future[Any] = asyncio.ensure_future(aw)
    stopper = asyncio.create_task(stop.wait())
    try:
        done, _ = await asyncio.wait(
            {task, stopper}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        stopper.cancel()
        if not task.done():
            task.cancel()

    if task in done:
        return task.result()

    # stop won the race; let the cancelled operation unwind before leaving
    await asyncio.gather(task, return_exceptions=True)
    raise Cancelled()
