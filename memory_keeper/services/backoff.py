from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import aiohttp


T = TypeVar("T")

_TIMEOUT_TYPES: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    aiohttp.ServerTimeoutError,
)


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 8.0

    @classmethod
    def from_millis(cls, max_attempts: int, base_delay_ms: int, max_delay_ms: int) -> "BackoffPolicy":
        return cls(
            max_attempts=max(1, int(max_attempts)),
            base_delay=max(0.0, base_delay_ms / 1000.0),
            max_delay=max(0.0, max_delay_ms / 1000.0),
        )


def error_status(error: BaseException | None) -> int | None:
    status = getattr(error, "status", None)
    if isinstance(status, bool):
        return None
    if isinstance(status, int):
        return status
    return None


def is_timeout_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    return isinstance(error, _TIMEOUT_TYPES)


def is_retriable_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    if is_timeout_error(error):
        return True
    status = error_status(error)
    if status == 429:
        return True
    return status is not None and 500 <= status < 600


def compute_delay(attempt: int, policy: BackoffPolicy, rand: Callable[[], float] = random.random) -> float:
    backoff = min(policy.max_delay, policy.base_delay * (2 ** max(0, attempt - 1)))
    return backoff * rand()


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """Run `operation` until it succeeds, fails non-retriably, or attempts run out.

    The last error is always re-raised; nothing is swallowed here.
    """
    selected = policy or BackoffPolicy()
    attempts = max(1, int(selected.max_attempts))
    attempt = 0
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            attempt += 1
            if attempt >= attempts or not is_retriable_error(exc):
                raise
            await sleep(compute_delay(attempt, selected, rand))
