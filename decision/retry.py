"""Bounded retry for transient store failures

Serialization conflicts and dropped connections are expected under concurrent
voting. The whole atomic unit is re-run; partial work never survives an
attempt because every attempt is its own transaction.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from config import get_logger
from decision.protocols import MetricsCollector, NullMetrics
from exceptions import HivemindError

logger = get_logger(__name__).bind(component="store_retry")

T = TypeVar("T")


async def run_with_retries(
    operation: str,
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 0.05,
    metrics: Optional[MetricsCollector] = None,
) -> T:
    """Run `func` until it succeeds or raises a non-retryable error.

    Args:
        operation: Name used in logs and metrics (e.g. "cast_vote")
        func: Zero-arg coroutine factory; called fresh per attempt
        max_attempts: Total attempts including the first
        base_delay: Linear backoff step in seconds (attempt * base_delay)
        metrics: Collector for store_retries

    Returns:
        Whatever `func` returns

    Raises:
        The last retryable error once attempts are exhausted, or any
        non-retryable error immediately
    """
    metrics = metrics or NullMetrics()

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except HivemindError as e:
            if not e.is_retryable or attempt == max_attempts:
                if e.is_retryable:
                    logger.error(
                        "store retries exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                raise

            delay = base_delay * attempt
            metrics.store_retries.labels(operation=operation).inc()
            logger.warning(
                "transient store failure, retrying",
                operation=operation,
                attempt=attempt,
                max_attempts=max_attempts,
                delay_seconds=delay,
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{operation}: retry loop exited without result")
