"""Retry bookkeeping and the exhaustion error."""

from __future__ import annotations

from dataclasses import dataclass, field
import time


@dataclass
class RetryStatistics:
    """What happened across the attempts of one retried call.

    ``attempts`` counts retries, so a call that succeeded first time has 0.
    """

    attempts: int = 0
    total_delay: float = 0.0
    start_time: float = field(default_factory=time.monotonic)
    end_time: float = 0.0
    exceptions: list[str] = field(default_factory=list)

    def record_retry(self, exc: Exception, delay: float) -> None:
        self.attempts += 1
        self.total_delay += delay
        self.exceptions.append(type(exc).__name__)

    def finish(self) -> None:
        self.end_time = time.monotonic()

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class RetryError(Exception):
    """Raised when every allowed attempt failed.

    Attributes:
        last_exception: Exception raised by the final attempt.
        attempts: Number of attempts made.
        statistics: Per-call retry statistics.
    """

    def __init__(
        self,
        last_exception: Exception,
        attempts: int,
        statistics: RetryStatistics | None = None,
    ) -> None:
        self.last_exception = last_exception
        self.attempts = attempts
        self.statistics = statistics
        super().__init__(f"Failed after {attempts} attempts. Last error: {last_exception}")
