"""Generic "call with policy" wrapper: timeout, retry with backoff, circuit breaker.

One ResiliencePolicy exists per backend. Every attempt runs under its own
timeout and is admitted by the backend's circuit breaker. Transient
failures are retried with exponential backoff (tenacity). Once the retry
budget or the breaker trips, the caller gets BackendUnavailableError.
"""
import asyncio
import sqlite3
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from docgraph import config
from docgraph.errors import BackendUnavailableError, DocGraphError
from docgraph.resilience.breaker import CircuitBreaker

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class ResilienceOptions:
    timeout: float = config.DEFAULT_TIMEOUT
    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    initial_delay: float = config.RETRY_INITIAL_DELAY
    max_delay: float = config.RETRY_MAX_DELAY
    multiplier: float = config.RETRY_MULTIPLIER
    jitter: bool = True
    failure_threshold: int = config.BREAKER_FAILURE_THRESHOLD
    reset_timeout: float = config.BREAKER_RESET_TIMEOUT


def is_transient(error: BaseException) -> bool:
    """Whether an error is worth retrying.

    Connection problems, timeouts, 5xx/429 responses and a locked SQLite
    database are transient. Our own error kinds never are.
    """
    if isinstance(error, DocGraphError):
        return False
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status == 429
    if isinstance(error, (httpx.TransportError, TimeoutError)):
        return True
    if isinstance(error, sqlite3.OperationalError):
        message = str(error).lower()
        return "locked" in message or "busy" in message
    return isinstance(error, OSError)


class ResiliencePolicy:
    """Applies timeout, retry and circuit breaking to calls against one backend."""

    def __init__(
        self,
        name: str,
        options: ResilienceOptions = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.name = name
        self.options = options or ResilienceOptions()
        self.breaker = breaker or CircuitBreaker(
            name,
            failure_threshold=self.options.failure_threshold,
            reset_timeout=self.options.reset_timeout,
        )

    def _wait(self):
        wait = wait_exponential(
            multiplier=self.options.initial_delay,
            min=self.options.initial_delay,
            max=self.options.max_delay,
            exp_base=self.options.multiplier,
        )
        if self.options.jitter and self.options.initial_delay > 0:
            wait = wait + wait_random(0, self.options.initial_delay)
        return wait

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "call",
    ) -> T:
        """Run ``operation`` under this backend's policy.

        Args:
            operation: Zero-argument coroutine function performing one attempt
            operation_name: Name used in log events

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: Breaker is open, backend not called
            BackendUnavailableError: Transient failures exhausted the retry budget
            Exception: Non-transient errors propagate unchanged
        """

        def log_retry(retry_state):
            error = retry_state.outcome.exception()
            logger.warning(
                "backend_call_retrying",
                backend=self.name,
                operation=operation_name,
                attempt=retry_state.attempt_number,
                error=str(error),
                error_type=type(error).__name__,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.options.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception(is_transient),
            before_sleep=log_retry,
            reraise=True,
        )

        try:
            return await retrying(self._attempt, operation)
        except DocGraphError:
            raise
        except Exception as e:
            if not is_transient(e):
                raise
            logger.error(
                "backend_call_failed",
                backend=self.name,
                operation=operation_name,
                attempts=self.options.max_attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise BackendUnavailableError(
                f"{self.name} is temporarily unavailable", backend=self.name
            ) from e

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        self.breaker.before_call()
        try:
            async with asyncio.timeout(self.options.timeout):
                result = await operation()
        except asyncio.CancelledError:
            self.breaker.release()
            raise
        except Exception as e:
            if is_transient(e):
                self.breaker.record_failure()
            else:
                self.breaker.release()
            raise
        self.breaker.record_success()
        return result
