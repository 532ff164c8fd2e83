"""
Reusable retry/backoff policy.

One ``RetryPolicy`` is shared by every external call (downloads, embedding
requests, completions) and by the job store when it schedules the next
attempt of a failed job, so in-call retries and job-level backoff follow the
same curve:

    delay(attempt) = min(max_delay, base * multiplier ** attempt) * U(1 - jitter, 1 + jitter)

clamped again to ``max_delay`` and never below ``MIN_DELAY_SECONDS``.
"""

import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from studyflow.core.config import settings
from studyflow.core.errors import is_transient
from studyflow.core.logging import get_logger

logger = get_logger(__name__)

MIN_DELAY_SECONDS = 0.1


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with bounded jitter and a retryable predicate."""

    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    jitter: float = 0.25
    max_delay: float = 300.0
    retryable: Callable[[BaseException], bool] = field(default=is_transient, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        if self.base_delay <= 0 or self.multiplier < 1:
            raise ValueError("base_delay must be > 0 and multiplier >= 1")

    @classmethod
    def from_settings(cls, **overrides: Any) -> "RetryPolicy":
        """Build the default policy from application settings."""
        values = {
            "max_attempts": settings.RETRY_MAX_ATTEMPTS,
            "base_delay": settings.RETRY_BASE_DELAY_SECONDS,
            "multiplier": settings.RETRY_MULTIPLIER,
            "jitter": settings.RETRY_JITTER,
            "max_delay": settings.RETRY_MAX_DELAY_SECONDS,
        }
        values.update(overrides)
        return cls(**values)

    def base_delay_for(self, attempt: int) -> float:
        """Un-jittered delay for a zero-based attempt number."""
        attempt = max(0, attempt)
        try:
            raw = self.base_delay * (self.multiplier ** attempt)
        except OverflowError:
            return self.max_delay
        return min(self.max_delay, raw)

    def compute_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay in seconds before retrying after ``attempt`` failures.

        Args:
            attempt: Zero-based attempt number
            rng: Optional random source (tests pass a seeded one)
        """
        source = rng or random
        factor = source.uniform(1 - self.jitter, 1 + self.jitter)
        delay = min(self.max_delay, self.base_delay_for(attempt) * factor)
        return max(MIN_DELAY_SECONDS, delay)

    def _wait(self, retry_state: RetryCallState) -> float:
        # tenacity counts attempts from 1
        return self.compute_delay(retry_state.attempt_number - 1)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retrying_external_call",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            sleep_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
            error=str(exc),
            error_type=type(exc).__name__ if exc else None,
        )

    def retrying(self) -> AsyncRetrying:
        """tenacity controller configured with this policy."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Await ``fn(*args, **kwargs)`` retrying retryable failures."""
        result = None
        async for attempt in self.retrying():
            with attempt:
                result = await fn(*args, **kwargs)
        return result
