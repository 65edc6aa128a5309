"""
Data Execution Package - Command executor with per-attempt cleanup and transient fault handling
"""

from .commands import (
    CommandDescriptor,
    CommandType,
    DataParameter,
    DbType,
    ParameterSet,
    normalize_parameter_name,
    python_type_for,
)
from .conversion import FormatProvider, INVARIANT, convert_scalar
from .driver import (
    ConnectionState,
    DriverConnection,
    DriverCommand,
    DriverTransaction,
    DbApiConnection,
    DbApiCommand,
)
from .errors import (
    DataExecutionError,
    ConnectionUnavailableError,
    ConversionError,
    DuplicateParameterError,
    NotSupportedError,
)
from .executor import DataManager
from .hooks import CommandEvent, CommandHooks
from .reader import DataReader

__all__ = [
    'CommandDescriptor',
    'CommandType',
    'DataParameter',
    'DbType',
    'ParameterSet',
    'normalize_parameter_name',
    'python_type_for',
    'FormatProvider',
    'INVARIANT',
    'convert_scalar',
    'ConnectionState',
    'DriverConnection',
    'DriverCommand',
    'DriverTransaction',
    'DbApiConnection',
    'DbApiCommand',
    'DataExecutionError',
    'ConnectionUnavailableError',
    'ConversionError',
    'DuplicateParameterError',
    'NotSupportedError',
    'DataManager',
    'CommandEvent',
    'CommandHooks',
    'DataReader',
]
