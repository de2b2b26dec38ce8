"""
Retry Policy - timeouts and exponential backoff for every external call.

Built on tenacity. The policy only looks at ``AutomationError.retryable``;
callers are responsible for translating provider failures into the error
taxonomy.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from structlog import get_logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from dmtobuy.exceptions import AutomationError, RateLimitedError, TemporarilyUnavailableError
from dmtobuy.observability import metrics

logger = get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class RetryPolicy:
    """
    Run an async call with a timeout, retrying retryable failures.

    Usage:
        policy = RetryPolicy(timeout_seconds=8.0, attempts=3)
        result = await policy.run("classify", lambda: client.classify(text))
    """

    def __init__(
        self,
        timeout_seconds: float = 8.0,
        attempts: int = 3,
        base_delay_seconds: float = 0.5,
        max_delay_seconds: float = 8.0,
        sleep: SleepFn | None = None,
    ) -> None:
        if attempts < 1:
            raise ValueError(f"attempts must be at least 1: {attempts}")
        self.timeout_seconds = timeout_seconds
        self.attempts = attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep or asyncio.sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry following ``attempt`` (1-based)."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)

    def should_retry(self, exc: BaseException) -> bool:
        if not isinstance(exc, AutomationError) or not exc.retryable:
            return False
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            # Too long to wait in-process; the queue requeues it instead.
            return exc.retry_after <= self.max_delay_seconds
        return True

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            return exc.retry_after
        return self.backoff_delay(retry_state.attempt_number)

    async def _attempt(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            raise TemporarilyUnavailableError(
                operation, f"timed out after {self.timeout_seconds}s"
            ) from exc

    async def run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Invoke ``call`` until it succeeds, fails terminally, or attempts run out."""

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            metrics.record_retry(operation, type(error).__name__)
            logger.warning(
                "external_call_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
                delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(error),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self._wait,
            retry=retry_if_exception(self.should_retry),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(self._attempt, operation, call)
