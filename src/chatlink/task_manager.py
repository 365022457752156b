"""Named asyncio tasks owned by the UI, such as the exchange being streamed."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Start, look up and cancel named background tasks.

    Finished tasks drop out of the registry on their own, so ``get`` only
    returns tasks that are still running.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def start(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Schedule ``coro`` under ``name``; a running task with that name is an error."""
        if self.get(name) is not None:
            coro.close()
            raise RuntimeError(f"Task {name!r} is already running.")
        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(lambda done: self._forget(name, done))
        return task

    def _forget(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error(
                "task.failed",
                extra={"event": "task.failed", "task": name},
                exc_info=task.exception(),
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        task = self._tasks.get(name)
        if task is None or task.done():
            return None
        return task

    async def cancel(self, name: str) -> None:
        """Cancel a named task and wait for it to finish."""
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel_all(self) -> None:
        for name in list(self._tasks):
            await self.cancel(name)
