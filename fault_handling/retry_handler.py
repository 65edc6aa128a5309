"""
Retry Handler - Transient fault policy wrapping a single operation in a bounded retry loop
"""

import asyncio
import inspect
import random
import threading
import time
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

import structlog

from .detection import TransientFaultPredicate, never_transient
from .errors import LatencyExceededError, NonTransientError, OperationCancelledError
from .options import TransientFaultHandlingOptions
from .tracker import FaultHandlingState, RetryState

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[RetryState, BaseException], None]


class TransientFaultPolicy:
    """
    Executes an operation up to ``retry_attempts`` times, retrying only transient faults

    The wait before attempt k+1 is ``recovery_wait_time + 2 ** min(k, cap)`` seconds
    (cap defaults to 5, so at most 32 seconds are added). Jitter is off unless
    configured. After the last attempt the operation's own exception is re-raised
    unchanged.
    """

    def __init__(self,
                 options: Optional[TransientFaultHandlingOptions] = None,
                 is_transient_fault: Optional[TransientFaultPredicate] = None,
                 on_retry: Optional[RetryCallback] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize transient fault policy

        Args:
            options: Retry configuration (defaults to TransientFaultHandlingOptions())
            is_transient_fault: Classifier deciding whether an exception may be retried
            on_retry: Optional callback invoked before each recovery wait
            sleep: Blocking wait used by ``execute``
            async_sleep: Suspending wait used by ``execute_async``
            clock: Monotonic clock used for latency accounting
        """
        self.options = options or TransientFaultHandlingOptions()
        self._detector = is_transient_fault or never_transient
        self.on_retry = on_retry
        self._sleep = sleep
        self._async_sleep = async_sleep
        self._clock = clock

    @property
    def retry_attempts(self) -> int:
        return self.options.retry_attempts

    @property
    def recovery_wait_time(self) -> float:
        return self.options.recovery_wait_time

    @property
    def enable_transient_fault_recovery(self) -> bool:
        return self.options.enable_transient_fault_recovery

    def is_transient_fault(self, error: BaseException) -> bool:
        """Classify an exception; NonTransientError subclasses are never retried"""
        if isinstance(error, NonTransientError):
            return False
        try:
            return bool(self._detector(error))
        except Exception as e:
            logger.warning("transient_fault_detector_failed", error=str(e))
            return False

    def get_delay(self, attempt: int) -> float:
        """
        Calculate the wait before the attempt following ``attempt``

        Args:
            attempt: The attempt that just failed (1-based)

        Returns:
            Delay in seconds
        """
        exponent = min(attempt, self.options.backoff_cap_exponent)
        delay = self.options.recovery_wait_time + 2 ** exponent
        if self.options.jitter:
            delay += random.uniform(0, self.options.jitter)
        return delay

    def execute(self, operation: Callable[[], T], cancel_event: Optional[threading.Event] = None) -> T:
        """
        Execute operation with transient fault handling

        Args:
            operation: Zero-argument callable performing one attempt
            cancel_event: Optional event; when set, no further attempt is started
                and a pending wait is cut short

        Returns:
            The operation's result

        Raises:
            OperationCancelledError: If cancellation was requested
            LatencyExceededError: If attempts took longer than allowed
            Exception: The operation's own exception when it is fatal or retries are exhausted
        """
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(1)

        if not self.options.enable_transient_fault_recovery:
            return operation()

        state = RetryState(self.options.retry_attempts, clock=self._clock)

        while True:
            try:
                result = operation()
            except Exception as e:
                delay = self._on_failure(state, e)
                if delay is None:
                    raise
            else:
                self._on_success(state)
                return result

            if cancel_event is not None:
                if cancel_event.wait(delay):
                    state.transition(FaultHandlingState.FAILED_FATAL)
                    raise OperationCancelledError(state.current_attempt + 1)
            else:
                self._sleep(delay)

            state.next_attempt()
            self._check_latency(state)

    async def execute_async(self,
                            operation: Callable[[], Union[T, Awaitable[T]]],
                            cancel_event: Optional[asyncio.Event] = None) -> T:
        """
        Asyncio variant of ``execute``; the recovery wait is a suspension point

        Args:
            operation: Coroutine function or plain callable performing one attempt
            cancel_event: Optional asyncio event aborting the loop when set
        """
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(1)

        if not self.options.enable_transient_fault_recovery:
            return await _resolve(operation())

        state = RetryState(self.options.retry_attempts, clock=self._clock)

        while True:
            try:
                result = await _resolve(operation())
            except Exception as e:
                delay = self._on_failure(state, e)
                if delay is None:
                    raise
            else:
                self._on_success(state)
                return result

            if cancel_event is not None:
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                else:
                    state.transition(FaultHandlingState.FAILED_FATAL)
                    raise OperationCancelledError(state.current_attempt + 1)
            else:
                await self._async_sleep(delay)

            state.next_attempt()
            self._check_latency(state)

    def wrap(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorate ``func`` so every call runs through this policy"""
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.execute(lambda: func(*args, **kwargs))

        wrapper.fault_policy = self
        return wrapper

    def _on_failure(self, state: RetryState, error: BaseException) -> Optional[float]:
        """
        Decide retry vs rethrow for a failed attempt

        Returns:
            The delay before the next attempt, or None when the error must propagate
        """
        transient = self.is_transient_fault(error)

        if not transient:
            state.transition(FaultHandlingState.FAILED_FATAL)
            logger.debug(
                "transient_fault_fatal",
                attempt=state.current_attempt,
                error_type=type(error).__name__,
                error=str(error)
            )
            return None

        if state.current_attempt >= state.retry_attempts:
            state.last_error = error
            state.transition(FaultHandlingState.FAILED_EXHAUSTED)
            logger.warning(
                "transient_fault_exhausted",
                attempts=state.current_attempt,
                total_wait_time=state.total_wait_time,
                latency=round(state.latency, 3),
                error_type=type(error).__name__,
                error=str(error)
            )
            return None

        delay = self.get_delay(state.current_attempt)
        state.begin_wait(delay, error)

        logger.warning(
            "transient_fault_retry",
            attempt=state.current_attempt,
            max_attempts=state.retry_attempts,
            delay=delay,
            error_type=type(error).__name__,
            error=str(error)
        )

        if self.on_retry:
            self.on_retry(state, error)

        return delay

    def _on_success(self, state: RetryState) -> None:
        state.transition(FaultHandlingState.SUCCEEDED)
        if state.current_attempt > 1:
            logger.info(
                "transient_fault_recovered",
                attempts=state.current_attempt,
                total_wait_time=state.total_wait_time
            )

    def _check_latency(self, state: RetryState) -> None:
        maximum = self.options.maximum_allowed_latency
        if maximum is None:
            return
        latency = state.latency
        if latency > maximum:
            state.transition(FaultHandlingState.FAILED_FATAL)
            logger.error(
                "transient_fault_latency_exceeded",
                attempt=state.current_attempt,
                latency=round(latency, 3),
                maximum_allowed_latency=maximum
            )
            raise LatencyExceededError(maximum, latency)


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def transient_fault_handling(options: Optional[TransientFaultHandlingOptions] = None,
                             is_transient_fault: Optional[TransientFaultPredicate] = None):
    """
    Transient fault handling decorator

    Usage:
        @transient_fault_handling(is_transient_fault=MessagePatternDetector())
        def load_rows():
            ...

    Args:
        options: Retry configuration
        is_transient_fault: Classifier deciding which exceptions are retried
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        policy = TransientFaultPolicy(options=options, is_transient_fault=is_transient_fault)
        return policy.wrap(func)

    return decorator
