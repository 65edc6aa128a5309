"""
Fault Handling Package - Transient fault policy, classifiers and retry tracking
"""

from .errors import (
    FaultHandlingError,
    NonTransientError,
    OperationCancelledError,
    LatencyExceededError,
    InvalidStateTransition,
)
from .detection import (
    TransientFaultPredicate,
    DEFAULT_TRANSIENT_MESSAGES,
    never_transient,
    flatten_exception_chain,
    MessagePatternDetector,
    ErrorCodeDetector,
    any_of,
)
from .options import TransientFaultHandlingOptions, DataSourceSettings, load_env_file
from .tracker import FaultHandlingState, RetryState
from .retry_handler import TransientFaultPolicy, transient_fault_handling

__all__ = [
    'FaultHandlingError',
    'NonTransientError',
    'OperationCancelledError',
    'LatencyExceededError',
    'InvalidStateTransition',
    'TransientFaultPredicate',
    'DEFAULT_TRANSIENT_MESSAGES',
    'never_transient',
    'flatten_exception_chain',
    'MessagePatternDetector',
    'ErrorCodeDetector',
    'any_of',
    'TransientFaultHandlingOptions',
    'DataSourceSettings',
    'load_env_file',
    'FaultHandlingState',
    'RetryState',
    'TransientFaultPolicy',
    'transient_fault_handling',
]
