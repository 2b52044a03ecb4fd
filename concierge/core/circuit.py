import time
from enum import Enum
from typing import Callable

from loguru import logger

from core.config import CircuitConfig


class CircuitState(str, Enum):
    CLOSED = "closed"        # Normal operation, calls pass through
    OPEN = "open"            # Failing, calls are rejected
    HALF_OPEN = "half_open"  # Recovery trial call in progress


class CircuitBreaker:
    """Per-service failure gate.

    Opens after ``failure_threshold`` consecutive failures, stays open for
    ``recovery_timeout_seconds``, then lets a single trial call through. The
    trial call's outcome closes or re-opens the circuit.
    """

    def __init__(self, name: str, config: CircuitConfig,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.config = config
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self.total_failures = 0
        self.total_successes = 0
        self.rejected = 0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self.retry_after <= 0:
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self.config.recovery_timeout_seconds - self._clock())

    def allow(self) -> bool:
        """Whether a call may go out now. Claims the trial slot when half-open."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._transition(CircuitState.HALF_OPEN)
            self._trial_in_flight = True
            return True
        self.rejected += 1
        return False

    def record_success(self) -> None:
        self.total_successes += 1
        self._consecutive_failures = 0
        self._trial_in_flight = False
        if self._state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self.total_failures += 1
        self._consecutive_failures += 1
        was_trial = self._trial_in_flight
        self._trial_in_flight = False
        if was_trial or self._consecutive_failures >= self.config.failure_threshold:
            self._opened_at = self._clock()
            self._transition(CircuitState.OPEN)

    def release(self) -> None:
        """Give back the trial slot for a call that ended without a verdict."""
        self._trial_in_flight = False

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            logger.warning("Circuit '{}' {} -> {} after {} consecutive failures",
                           self.name, old_state.value, new_state.value, self._consecutive_failures)
        else:
            logger.info("Circuit '{}' {} -> {}", self.name, old_state.value, new_state.value)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "rejected": self.rejected,
            "retry_after": round(self.retry_after, 1),
        }
