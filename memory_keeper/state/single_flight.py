from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("memory_keeper")


class SingleFlight:
    """Coalesces triggers: at most one run in flight plus one trailing run.

    Calls to `submit()` while a run is in flight only mark a trailing run as
    pending, so any burst of triggers collapses into two executions.
    """

    def __init__(self, fn: Callable[[], Awaitable[None]], *, name: str = "single-flight") -> None:
        self._fn = fn
        self.name = name
        self._task: asyncio.Task[None] | None = None
        self._pending = False
        self.executions = 0

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> bool:
        return self._pending

    def submit(self) -> asyncio.Task[None]:
        if self._task is not None and not self._task.done():
            self._pending = True
            return self._task
        self._task = asyncio.create_task(self._drive(), name=self.name)
        return self._task

    async def run(self) -> None:
        """Submit and wait until this trigger has been served."""
        await asyncio.shield(self.submit())

    async def wait_idle(self) -> None:
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def _drive(self) -> None:
        while True:
            self._pending = False
            self.executions += 1
            try:
                await self._fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s run failed", self.name)
            if not self._pending:
                return
