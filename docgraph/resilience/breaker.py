"""Circuit breaker shared by all callers of one backend.

State changes happen in plain synchronous methods with no awaits in
between, so they are atomic with respect to other tasks on the event loop.
"""
import time
from enum import Enum
from typing import Callable

import structlog

from docgraph.errors import CircuitOpenError

logger = structlog.get_logger()


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens after consecutive failures, allows one trial call after a cool-down."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._cooled_down():
            return CircuitState.HALF_OPEN
        return self._state

    def _cooled_down(self) -> bool:
        return self._clock() - self._opened_at >= self.reset_timeout

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpenError.

        Raises:
            CircuitOpenError: While open, or while a half-open trial is running
        """
        if self._state is CircuitState.CLOSED:
            return

        if self._state is CircuitState.OPEN:
            if not self._cooled_down():
                raise CircuitOpenError(
                    f"{self.name} is temporarily unavailable", backend=self.name
                )
            self._transition(CircuitState.HALF_OPEN)

        if self._trial_in_flight:
            raise CircuitOpenError(
                f"{self.name} is temporarily unavailable", backend=self.name
            )
        self._trial_in_flight = True

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._trial_in_flight = False
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._trial_in_flight = False

        if self._state is CircuitState.HALF_OPEN:
            self._open()
            return

        self._consecutive_failures += 1
        if (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self.failure_threshold
        ):
            self._open()

    def release(self) -> None:
        """Give back a half-open trial slot without recording an outcome."""
        self._trial_in_flight = False

    def reset(self) -> None:
        self._consecutive_failures = 0
        self._trial_in_flight = False
        self._state = CircuitState.CLOSED

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "circuit_state_changed",
            backend=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            consecutive_failures=self._consecutive_failures,
        )
