from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, Set

log = logging.getLogger(__name__)


class BackgroundTasks:
    """
    Supervised fire-and-forget tasks. A task's failure is logged from its done
    callback and never reaches whoever spawned it.
    """

    def __init__(self) -> None:
        self._tasks: Set["asyncio.Task[object]"] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[object], *, name: Optional[str] = None) -> "asyncio.Task[object]":
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: "asyncio.Task[object]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("background task %s failed: %r", task.get_name(), exc)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Waits for everything spawned so far, including tasks spawned while waiting."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                break
            _, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                log.warning("%d background tasks still running after %.2fs", len(not_done), timeout or 0.0)
                return
        # let the done callbacks of the last batch run
        await asyncio.sleep(0)
