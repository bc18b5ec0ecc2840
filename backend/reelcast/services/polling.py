"""Bounded polling for remote jobs that finish asynchronously (e.g. Instagram containers)."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollTimeout(Exception):
    def __init__(self, attempts: int, last_value=None):
        super().__init__(f"Still not ready after {attempts} attempts")
        self.attempts = attempts
        self.last_value = last_value


class PollFailed(Exception):
    def __init__(self, value):
        super().__init__(f"Remote job reported failure: {value!r}")
        self.value = value


@dataclass
class PollOutcome(Generic[T]):
    value: T
    attempts: int


async def poll_until(
    check: Callable[[], Awaitable[T]],
    *,
    is_done: Callable[[T], bool],
    is_failed: Callable[[T], bool] = lambda _v: False,
    interval_sec: float,
    max_attempts: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "poll",
) -> PollOutcome[T]:
    """Sleep, then check, up to max_attempts times.

    Raises PollFailed when is_failed() matches and PollTimeout when attempts run out.
    Exceptions from check() propagate unchanged.
    """
    last = None
    for attempt in range(1, max_attempts + 1):
        await sleep(interval_sec)
        last = await check()
        if is_failed(last):
            raise PollFailed(last)
        if is_done(last):
            logger.debug(f"[{label}] done after {attempt} attempt(s)")
            return PollOutcome(value=last, attempts=attempt)
        logger.debug(f"[{label}] attempt {attempt}/{max_attempts}: {last!r}")
    raise PollTimeout(max_attempts, last)
