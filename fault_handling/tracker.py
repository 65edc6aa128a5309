"""
Retry Tracker - Per-operation retry state and its state machine
"""

import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .errors import InvalidStateTransition


class FaultHandlingState(Enum):
    """Retry loop states"""
    ATTEMPTING = "ATTEMPTING"
    WAITING_TO_RETRY = "WAITING_TO_RETRY"
    SUCCEEDED = "SUCCEEDED"
    FAILED_FATAL = "FAILED_FATAL"
    FAILED_EXHAUSTED = "FAILED_EXHAUSTED"


TERMINAL_STATES = frozenset({
    FaultHandlingState.SUCCEEDED,
    FaultHandlingState.FAILED_FATAL,
    FaultHandlingState.FAILED_EXHAUSTED,
})

# Cancellation during a wait ends the loop as FAILED_FATAL
_TRANSITIONS = {
    FaultHandlingState.ATTEMPTING: frozenset({
        FaultHandlingState.SUCCEEDED,
        FaultHandlingState.FAILED_FATAL,
        FaultHandlingState.FAILED_EXHAUSTED,
        FaultHandlingState.WAITING_TO_RETRY,
    }),
    FaultHandlingState.WAITING_TO_RETRY: frozenset({
        FaultHandlingState.ATTEMPTING,
        FaultHandlingState.FAILED_FATAL,
    }),
}


class RetryState:
    """Attempt counter and timing for one logical operation"""

    def __init__(self, retry_attempts: int, clock: Callable[[], float] = time.monotonic):
        """
        Initialize retry state

        Args:
            retry_attempts: Maximum number of attempts (>= 1)
            clock: Monotonic clock in seconds
        """
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

        self.retry_attempts = retry_attempts
        self.current_attempt = 1
        self.state = FaultHandlingState.ATTEMPTING
        self.last_wait_time = 0.0
        self.total_wait_time = 0.0
        self.last_error: Optional[BaseException] = None
        self._clock = clock
        self.started_at = clock()
        self.completed_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def attempts_remaining(self) -> int:
        return self.retry_attempts - self.current_attempt

    @property
    def elapsed(self) -> float:
        end = self.completed_at if self.completed_at is not None else self._clock()
        return end - self.started_at

    @property
    def latency(self) -> float:
        """Time spent inside attempts, excluding recovery waits"""
        return max(0.0, self.elapsed - self.total_wait_time)

    def transition(self, new_state: FaultHandlingState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.completed_at = self._clock()

    def begin_wait(self, delay: float, error: BaseException) -> None:
        self.transition(FaultHandlingState.WAITING_TO_RETRY)
        self.last_wait_time = delay
        self.total_wait_time += delay
        self.last_error = error

    def next_attempt(self) -> None:
        if self.current_attempt >= self.retry_attempts:
            raise InvalidStateTransition(
                f"Attempt budget of {self.retry_attempts} already used"
            )
        self.transition(FaultHandlingState.ATTEMPTING)
        self.current_attempt += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'current_attempt': self.current_attempt,
            'retry_attempts': self.retry_attempts,
            'last_wait_time': self.last_wait_time,
            'total_wait_time': self.total_wait_time,
            'latency': self.latency,
            'last_error': repr(self.last_error) if self.last_error else None,
        }
