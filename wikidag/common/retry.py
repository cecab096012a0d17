"""
Retry helpers for unit-level storage operations.

Each unit (BFS level, identity batch, merge window) is retried as a whole;
the session context manager has already rolled the failed attempt back.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError

from .config import RetrySettings
from .errors import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (
    OperationalError,
    InterfaceError,
    TransientStorageError,
    ConnectionError,
    TimeoutError,
)


async def _async_sleep_with_backoff(attempt: int, base_delay: float = 0.5, max_delay: float = 8.0) -> None:
    """Async sleep helper for exponential backoff with jitter."""
    delay = min(max_delay, base_delay * (2**attempt))
    delay *= 1 + random.uniform(-0.2, 0.2)
    if delay > 0:
        await asyncio.sleep(delay)


async def run_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetrySettings,
    phase: str,
    unit: Optional[str] = None,
    key_range: Optional[Tuple[int, int]] = None,
) -> T:
    """
    Run an async unit of work, retrying transient storage failures.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Retries after the first attempt and backoff bounds
        phase: Phase name for error context
        unit: Unit identifier (level number, window bounds, ...)
        key_range: Key range covered by the unit

    Returns:
        Whatever the operation returns

    Raises:
        TransientStorageError: once all attempts are exhausted
    """
    attempts = policy.max_retries + 1
    last_exc: Optional[BaseException] = None
    for attempt in range(attempts):
        try:
            return await operation()
        except TRANSIENT_ERRORS as exc:
            last_exc = exc
            logger.warning(
                "%s unit %s attempt %d/%d failed: %s",
                phase,
                unit,
                attempt + 1,
                attempts,
                exc,
            )
            if attempt + 1 < attempts:
                await _async_sleep_with_backoff(attempt, policy.base_delay, policy.max_delay)

    raise TransientStorageError(
        f"Unit failed after {attempts} attempts: {last_exc}",
        attempts=attempts,
        phase=phase,
        unit=unit,
        key_range=key_range,
    ) from last_exc
