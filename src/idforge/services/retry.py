"""Exponential backoff executor shared by every external call site."""

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from idforge.services.exceptions import TransientError

logger = structlog.get_logger()

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    operation_name: str = "operation",
) -> T:
    """Run an async operation, retrying with exponential delay on any failure.

    The first attempt runs immediately. After failed attempt ``n`` (0-based) the
    executor sleeps ``initial_delay * 2**n`` seconds, if attempts remain. Every
    exception is retried identically; there is no jitter.
    Log events mark whether the failure was a TransientError.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        max_attempts: Total number of attempts (including the first)
        initial_delay: Delay in seconds after the first failure
        operation_name: Label used in log events

    Returns:
        Result of the first successful attempt

    Raises:
        ValueError: If max_attempts is less than 1
        Exception: The last underlying error, unchanged, once attempts are exhausted
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as e:
            if attempt < max_attempts - 1:
                delay = initial_delay * (2**attempt)
                logger.warning(
                    "retry.attempt_failed",
                    operation=operation_name,
                    error=str(e),
                    error_type=type(e).__name__,
                    transient=isinstance(e, TransientError),
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    retry_in_seconds=delay,
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    "retry.exhausted",
                    operation=operation_name,
                    error=str(e),
                    error_type=type(e).__name__,
                    transient=isinstance(e, TransientError),
                    attempts=max_attempts,
                )
                raise

    # Unreachable: the loop either returns or re-raises
    raise RuntimeError("retry_with_backoff exited without result")
