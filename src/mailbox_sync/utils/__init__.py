"""Utility functions for the mailbox sync engine."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from mailbox_sync.exceptions import MailboxError

logger = structlog.get_logger()

T = TypeVar("T")


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 60.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``func()`` and retry transient failures with exponential backoff.

    Only errors whose kind is retryable (rate limiting, network failures) are
    retried. A provider ``retry_after`` hint takes precedence over the backoff
    delay when it is longer. Everything else propagates immediately.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        max_retries: Maximum number of retry attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each retry.
        max_delay: Upper bound for a single wait.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The first successful result.
    """

    current_delay = delay
    for attempt in range(max_retries + 1):
        try:
            return await func()
        except MailboxError as e:
            if not e.retryable or attempt >= max_retries:
                if e.retryable:
                    logger.error(
                        "function_retry_exhausted",
                        function=getattr(func, "__name__", repr(func)),
                        attempts=attempt + 1,
                        error=str(e),
                    )
                raise
            wait = min(max(current_delay, e.retry_after or 0.0), max_delay)
            logger.warning(
                "function_retry",
                function=getattr(func, "__name__", repr(func)),
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=wait,
                kind=e.kind.value,
                error=str(e),
            )
            await sleep(wait)
            current_delay *= backoff

    raise AssertionError("unreachable")  # pragma: no cover
