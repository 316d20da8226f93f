"""Fixed-delay retry helper shared by submission and sync paths."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import TransientRemoteError

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
RetryHook = Callable[[int, int, BaseException], None]


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    *,
    attempts: int,
    delay: float,
    retry_on: tuple[type[BaseException], ...] = (TransientRemoteError,),
    on_retry: RetryHook | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` are exhausted.

    ``operation`` receives the 1-based attempt number. Only exceptions listed
    in ``retry_on`` trigger another attempt; anything else propagates at once.
    The last retryable exception is re-raised once the attempts are used up.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    attempt = 1
    while True:
        try:
            return await operation(attempt)
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.1fs",
                attempt,
                attempts,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, attempts, exc)
            await sleep(delay)
            attempt += 1
