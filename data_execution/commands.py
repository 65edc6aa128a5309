"""
Command Descriptors and Parameter Sets

A CommandDescriptor describes one unit of work (text, type, timeout).
A ParameterSet is the ordered, name-unique collection of inputs bound to it.
Both are reused unchanged across retries of the same logical operation.
"""

import datetime
import decimal
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .errors import DuplicateParameterError

DEFAULT_COMMAND_TIMEOUT = timedelta(seconds=30)

# Largest timeout a driver accepts in whole seconds (32-bit signed)
_MAX_TIMEOUT_SECONDS = 2 ** 31 - 1

_PARAMETER_PREFIXES = "@:%$"


class CommandType(Enum):
    """How the command text is interpreted by the data source"""
    TEXT = "text"
    STORED_PROCEDURE = "stored_procedure"


class DbType(Enum):
    """Logical parameter types"""
    ANSI_STRING = "ansi_string"
    BINARY = "binary"
    BOOLEAN = "boolean"
    BYTE = "byte"
    CURRENCY = "currency"
    DATE = "date"
    DATETIME = "datetime"
    DATETIME_OFFSET = "datetime_offset"
    DECIMAL = "decimal"
    DOUBLE = "double"
    GUID = "guid"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    OBJECT = "object"
    SINGLE = "single"
    STRING = "string"
    TIME = "time"
    XML = "xml"


_DB_TYPE_MAP = {
    DbType.ANSI_STRING: str,
    DbType.BINARY: bytes,
    DbType.BOOLEAN: bool,
    DbType.BYTE: int,
    DbType.CURRENCY: decimal.Decimal,
    DbType.DATE: datetime.date,
    DbType.DATETIME: datetime.datetime,
    DbType.DATETIME_OFFSET: datetime.datetime,
    DbType.DECIMAL: decimal.Decimal,
    DbType.DOUBLE: float,
    DbType.GUID: uuid.UUID,
    DbType.INT16: int,
    DbType.INT32: int,
    DbType.INT64: int,
    DbType.OBJECT: object,
    DbType.SINGLE: float,
    DbType.STRING: str,
    DbType.TIME: datetime.time,
    DbType.XML: str,
}


def python_type_for(db_type: DbType) -> type:
    """
    Resolve the Python type values of a DbType are materialized as

    Raises:
        ValueError: If the type is not supported
    """
    try:
        return _DB_TYPE_MAP[db_type]
    except KeyError:
        raise ValueError(f"Type, '{db_type}', is unsupported.") from None


def normalize_parameter_name(name: str) -> str:
    """Strip provider-specific prefixes (@id, :id, %id) from a parameter name"""
    normalized = name.lstrip(_PARAMETER_PREFIXES).strip()
    if not normalized:
        raise ValueError(f"Invalid parameter name: {name!r}")
    return normalized


@dataclass(frozen=True)
class CommandDescriptor:
    """Immutable description of a command to execute against a data source"""
    text: str
    command_type: CommandType = CommandType.TEXT
    timeout: timedelta = DEFAULT_COMMAND_TIMEOUT

    def __post_init__(self):
        if not self.text or not self.text.strip():
            raise ValueError("Command text cannot be empty")
        if not isinstance(self.command_type, CommandType):
            raise TypeError(f"command_type must be a CommandType, got {type(self.command_type).__name__}")
        if isinstance(self.timeout, (int, float)):
            object.__setattr__(self, 'timeout', timedelta(seconds=self.timeout))

    @property
    def timeout_seconds(self) -> int:
        """Timeout in whole seconds; 0 means wait indefinitely"""
        seconds = self.timeout.total_seconds()
        if seconds < 0 or seconds >= _MAX_TIMEOUT_SECONDS:
            return 0
        return int(seconds)

    def with_text(self, text: str) -> 'CommandDescriptor':
        """Copy of this descriptor with different command text"""
        return replace(self, text=text)


@dataclass(eq=False)
class DataParameter:
    """A named, typed input value"""
    name: str
    value: Any = None
    db_type: Optional[DbType] = None

    @property
    def key(self) -> str:
        return normalize_parameter_name(self.name)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DataParameter):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


ParameterInput = Union['ParameterSet', Iterable[DataParameter], Dict[str, Any], None]


class ParameterSet:
    """Ordered sequence of parameters, unique by (normalized) name"""

    def __init__(self, parameters: Optional[Iterable[DataParameter]] = None):
        self._parameters: Dict[str, DataParameter] = {}
        for parameter in parameters or ():
            self.add(parameter)

    @classmethod
    def coerce(cls, parameters: ParameterInput) -> 'ParameterSet':
        """Build a ParameterSet from a set, an iterable of parameters or a name/value mapping"""
        if parameters is None:
            return cls()
        if isinstance(parameters, ParameterSet):
            return parameters
        if isinstance(parameters, dict):
            return cls(DataParameter(name, value) for name, value in parameters.items())
        return cls(parameters)

    def add(self, parameter: DataParameter) -> DataParameter:
        if parameter.key in self._parameters:
            raise DuplicateParameterError(parameter.name)
        self._parameters[parameter.key] = parameter
        return parameter

    def add_value(self, name: str, value: Any, db_type: Optional[DbType] = None) -> DataParameter:
        return self.add(DataParameter(name, value, db_type))

    def names(self) -> List[str]:
        return list(self._parameters)

    def as_mapping(self) -> Dict[str, Any]:
        return {key: parameter.value for key, parameter in self._parameters.items()}

    def as_sequence(self) -> Tuple[Any, ...]:
        return tuple(parameter.value for parameter in self._parameters.values())

    def __getitem__(self, name: str) -> DataParameter:
        return self._parameters[normalize_parameter_name(name)]

    def __contains__(self, name: object) -> bool:
        if isinstance(name, DataParameter):
            return name.key in self._parameters
        return isinstance(name, str) and normalize_parameter_name(name) in self._parameters

    def __iter__(self) -> Iterator[DataParameter]:
        return iter(self._parameters.values())

    def __len__(self) -> int:
        return len(self._parameters)

    def __repr__(self) -> str:
        return f"ParameterSet({list(self._parameters.values())!r})"
