"""
Retry helper for gateway calls.

Exponential backoff: attempt n waits base * 2^(n-1) seconds before retrying.
Client errors (4xx) are returned to the caller immediately.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from engine.errors import GatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    description: str,
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await `operation()` with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory
        description: Label used in log messages
        max_attempts: Total attempts including the first
        backoff_seconds: Delay before the first retry
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The operation's result

    Raises:
        GatewayError: Last failure once attempts are exhausted, or any 4xx
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except GatewayError as exc:
            if exc.is_client_error or attempt == attempts:
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description, attempt, attempts, exc, delay,
            )
            await sleep(delay)
    raise GatewayError(f"{description} failed")
