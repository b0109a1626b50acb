"""Bounded retries for calls to the billing provider."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")
AsyncFactory = Callable[[], Awaitable[T]]


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay before retry number ``attempt`` (1-based), capped."""

    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def retry_async(
    operation: AsyncFactory[T],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    logger=None,
    operation_name: str = "operation",
) -> T:
    """Run ``operation`` up to ``max_attempts`` times.

    ``operation`` is a factory so each attempt gets a fresh awaitable. Only
    exceptions in ``retry_on`` trigger another attempt; the last one is
    re-raised unchanged.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == max_attempts:
                if logger is not None:
                    logger.warning(
                        "retry_exhausted",
                        operation=operation_name,
                        attempts=attempt,
                        error=str(exc),
                    )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            if logger is not None:
                logger.info(
                    "retrying_operation",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=delay,
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(delay)

    # This point is never reached but keeps type-checkers happy.
    raise RuntimeError(f"{operation_name} failed after {max_attempts} attempts")


__all__ = ["backoff_delay", "retry_async"]
