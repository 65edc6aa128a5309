"""
Fault Handling Errors

The policy never wraps the operation's own exception; these types cover
conditions the policy itself detects.
"""


class FaultHandlingError(Exception):
    """Base class for errors raised by the transient fault policy"""
    pass


class NonTransientError(Exception):
    """Marker base: exceptions of this type are never retried, whatever the classifier says"""
    pass


class OperationCancelledError(FaultHandlingError):
    """Raised when a cancellation signal is observed before an attempt or during a wait"""

    def __init__(self, attempt: int):
        super().__init__(f"The operation was cancelled before attempt {attempt} could complete.")
        self.attempt = attempt


class LatencyExceededError(FaultHandlingError):
    """Raised when time spent in attempts exceeds the maximum allowed latency"""

    def __init__(self, maximum_allowed_latency: float, latency: float):
        super().__init__(
            f"The latency of the operation exceeded the allowed maximum value of "
            f"{maximum_allowed_latency} seconds. Actual latency was: {latency:.3f} seconds."
        )
        self.maximum_allowed_latency = maximum_allowed_latency
        self.latency = latency


class InvalidStateTransition(FaultHandlingError):
    """Raised when a RetryState is moved along an edge the state machine does not have"""
    pass
