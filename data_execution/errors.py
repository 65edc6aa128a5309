"""
Data Execution Errors - Exceptions raised by the command executor itself

Driver exceptions are never wrapped in these types; they reach the caller
(and the transient fault policy) unchanged.
"""

from typing import Any, Optional

from fault_handling.errors import NonTransientError


class DataExecutionError(Exception):
    """Base class for errors raised by the data execution layer"""
    pass


class ConnectionUnavailableError(DataExecutionError):
    """Raised when a command has no connection associated with it"""
    pass


class NotSupportedError(DataExecutionError):
    """Raised when a driver cannot perform the requested command type"""
    pass


class DuplicateParameterError(DataExecutionError, ValueError):
    """Raised when a parameter name is added twice to a ParameterSet"""

    def __init__(self, name: str):
        super().__init__(f"A parameter named '{name}' already exists in the parameter set.")
        self.name = name


class ConversionError(DataExecutionError, NonTransientError):
    """Raised when a scalar value cannot be coerced to the requested type; never retried"""

    def __init__(self, value: Any, target_type: type, provider_name: Optional[str] = None):
        self.value = value
        self.target_type = target_type
        self.provider_name = provider_name
        type_name = getattr(target_type, '__name__', str(target_type))
        message = f"Unable to convert {value!r} ({type(value).__name__}) to {type_name}"
        if provider_name:
            message += f" using format provider '{provider_name}'"
        super().__init__(message + ".")
