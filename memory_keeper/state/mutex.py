from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, TypeVar, Union

T = TypeVar("T")


class StateMutex:
    """FIFO critical sections over the working-state maps.

    `asyncio.Lock` wakes waiters in arrival order, so bodies run one at a
    time and in call order.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def run_exclusive(self, callback: Callable[[], Union[T, Awaitable[T]]]) -> T:
        async with self._lock:
            result: Any = callback()
            if inspect.isawaitable(result):
                result = await result
            return result
