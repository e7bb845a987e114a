"""
Bounded exponential back-off for calls to external services.

delay(attempt) = min(initial_delay * 2 ** (attempt - 1), max_delay)

Only TransientExternalError (and asyncio timeouts, converted by the caller)
is retried; anything else propagates on the first failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from knowledge_ingest.core.errors import TransientExternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 3
INITIAL_DELAY = 1.0
MAX_DELAY = 10.0


def backoff_delay(attempt: int, initial_delay: float = INITIAL_DELAY, max_delay: float = MAX_DELAY) -> float:
    """Delay before retry number `attempt` (1-based)."""
    return min(initial_delay * (2 ** (attempt - 1)), max_delay)


async def retry_with_backoff(
    operation:     Callable[[], Awaitable[T]],
    *,
    label:         str,
    max_retries:   int = MAX_RETRIES,
    initial_delay: float = INITIAL_DELAY,
    max_delay:     float = MAX_DELAY,
) -> T:
    """
    Run `operation` up to 1 + max_retries times.

    Raises the last TransientExternalError once retries are exhausted.
    """
    last_error: TransientExternalError | None = None

    for attempt in range(max_retries + 1):
        if attempt > 0:
            delay = backoff_delay(attempt, initial_delay, max_delay)
            logger.warning(
                "Retry | op=%s attempt=%d delay=%.1fs error=%s",
                label, attempt, delay, last_error,
            )
            await asyncio.sleep(delay)
        try:
            return await operation()
        except TransientExternalError as exc:
            last_error = exc

    assert last_error is not None
    logger.error("Retries exhausted | op=%s attempts=%d error=%s", label, max_retries + 1, last_error)
    raise last_error
