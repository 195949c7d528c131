"""Async retry decorator."""

from __future__ import annotations

import asyncio
from functools import wraps
import logging
from typing import TYPE_CHECKING, NoReturn, ParamSpec, TypeVar

from amqp_topology.infra.metrics.tracking import (
    track_retry_attempt,
    track_retry_exhausted,
    track_retry_success,
)

from .exceptions import RetryError, RetryStatistics
from .strategies import RetryStrategy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    jitter_range: tuple[float, float] = (0.5, 1.5),
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[Exception, int], None] | None = None,
    reraise: bool = False,
    strategy: RetryStrategy | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Retry an async callable.

    Args:
        max_attempts: Total attempts, the first call included.
        initial_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single delay.
        exponential_base: Growth factor between delays (1.0 for a fixed delay).
        jitter: Multiply each delay by a random factor from ``jitter_range``.
        jitter_range: Bounds of the jitter factor.
        exceptions: Exception types worth retrying.
        retry_if: Predicate replacing the ``exceptions`` check.
        on_retry: Called with the exception and attempt number before sleeping.
        reraise: Raise the last exception unchanged instead of :class:`RetryError`.
        strategy: Prebuilt strategy; overrides the delay/filter arguments.

    Example:
            @retry(strategy=RetryStrategy.fixed(max_attempts=30, delay=3.0), reraise=True)
            async def probe() -> None:
                ...
    """
    strategy = strategy or RetryStrategy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
        jitter_range=jitter_range,
        exceptions=exceptions,
        retry_if=retry_if,
    )

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        operation = func.__name__

        def give_up(exc: Exception, statistics: RetryStatistics) -> NoReturn:
            statistics.finish()
            track_retry_exhausted(operation)
            logger.error(
                f"All retry attempts exhausted for {operation}",
                extra={
                    "function": operation,
                    "attempts": statistics.attempts + 1,
                    "last_exception": str(exc),
                    "total_delay": statistics.total_delay,
                    "duration": statistics.duration,
                },
            )
            if reraise:
                raise exc
            raise RetryError(exc, statistics.attempts + 1, statistics) from exc

        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            statistics = RetryStatistics()

            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    if not strategy.should_retry(e):
                        logger.warning(
                            f"Non-retryable exception in {operation}: {e}",
                            extra={"function": operation, "exception": str(e)},
                        )
                        raise
                    if statistics.attempts + 1 >= strategy.max_attempts:
                        give_up(e, statistics)

                    delay = strategy.calculate_delay(statistics.attempts)
                    statistics.record_retry(e, delay)
                    track_retry_attempt(operation, statistics.attempts + 1)
                    logger.warning(
                        f"Retrying {operation} after {delay:.2f}s "
                        f"(attempt {statistics.attempts}/{strategy.max_attempts})",
                        extra={
                            "function": operation,
                            "attempt": statistics.attempts,
                            "max_attempts": strategy.max_attempts,
                            "delay": delay,
                            "exception": str(e),
                        },
                    )
                    if on_retry:
                        on_retry(e, statistics.attempts)
                    await asyncio.sleep(delay)
                    continue

                if statistics.attempts:
                    track_retry_success(operation, statistics.attempts + 1)
                return result

        return async_wrapper

    return decorator
