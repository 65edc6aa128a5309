"""
Driver Contracts - Connection and command abstractions consumed by the executor

The executor only talks to DriverConnection / DriverCommand. DbApiConnection and
DbApiCommand adapt any PEP 249 driver (psycopg2, sqlite3, ...) to that contract:
the driver's ``connect`` callable is the connection factory, the connection string
is passed through opaquely.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import structlog

from .commands import CommandType, DataParameter
from .errors import ConnectionUnavailableError, NotSupportedError
from .reader import DataReader

logger = structlog.get_logger(__name__)

BoundParameters = Union[Dict[str, Any], Tuple[Any, ...]]

_MAPPING_STYLES = ("pyformat", "named")
_SEQUENCE_STYLES = ("qmark", "format", "numeric")


class ConnectionState(Enum):
    """Driver connection states"""
    CLOSED = "closed"
    OPEN = "open"
    BROKEN = "broken"


class DriverParameterCollection:
    """Parameters attached to one driver-level command"""

    def __init__(self):
        self._items: List[DataParameter] = []

    def add(self, parameter: DataParameter) -> None:
        self._items.append(parameter)

    def clear(self) -> None:
        self._items.clear()

    def bind(self, paramstyle: str) -> Optional[BoundParameters]:
        """Project the parameters into the shape the driver's paramstyle expects"""
        if not self._items:
            return None
        if paramstyle in _MAPPING_STYLES:
            return {parameter.key: parameter.value for parameter in self._items}
        if paramstyle in _SEQUENCE_STYLES:
            return tuple(parameter.value for parameter in self._items)
        raise NotSupportedError(f"Unsupported DB-API paramstyle: {paramstyle}")

    def __iter__(self) -> Iterator[DataParameter]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)


class DriverTransaction(ABC):
    """Begin/commit primitive exposed by a connection"""

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


class DriverConnection(ABC):
    """Connection contract consumed by the executor"""

    @property
    @abstractmethod
    def state(self) -> ConnectionState:
        ...

    @abstractmethod
    def open(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def create_command(self) -> 'DriverCommand':
        ...

    @abstractmethod
    def begin_transaction(self) -> DriverTransaction:
        ...


class DriverCommand(ABC):
    """Command contract consumed by the executor"""

    def __init__(self,
                 connection: Optional[DriverConnection] = None,
                 text: str = "",
                 command_type: CommandType = CommandType.TEXT,
                 timeout: int = 0):
        self.connection = connection
        self.text = text
        self.command_type = command_type
        self.timeout = timeout
        self.parameters = DriverParameterCollection()

    @abstractmethod
    def execute_non_query(self) -> int:
        ...

    @abstractmethod
    def execute_scalar(self) -> Any:
        ...

    @abstractmethod
    def execute_reader(self, on_close: Optional[Callable[[], None]] = None) -> DataReader:
        ...

    def close(self) -> None:
        """Release command-level resources (the connection is managed separately)"""
        pass


class DbTransaction(DriverTransaction):
    """Explicit transaction on a DbApiConnection"""

    def __init__(self, connection: 'DbApiConnection'):
        self._connection = connection
        self._completed = False
        connection.in_transaction = True

    def commit(self) -> None:
        self._complete(self._connection.raw.commit)

    def rollback(self) -> None:
        self._complete(self._connection.raw.rollback)

    def _complete(self, action: Callable[[], None]) -> None:
        if self._completed:
            raise RuntimeError("Transaction has already been completed")
        try:
            action()
        finally:
            self._completed = True
            self._connection.in_transaction = False

    def __enter__(self) -> 'DbTransaction':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._completed:
            return
        if exc_type is None:
            self.commit()
        else:
            self.rollback()


class DbApiConnection(DriverConnection):
    """PEP 249 connection adapter; a fresh driver connection is made per open()"""

    def __init__(self,
                 connect: Callable[..., Any],
                 connection_string: str,
                 paramstyle: str = "pyformat",
                 apply_timeout: Optional[Callable[[Any, int], None]] = None,
                 connect_kwargs: Optional[Dict[str, Any]] = None):
        """
        Initialize DB-API connection adapter

        Args:
            connect: Driver connect callable (e.g. psycopg2.connect)
            connection_string: Opaque connection string handed to ``connect``
            paramstyle: Driver paramstyle used to bind parameters
            apply_timeout: Optional callback setting a statement timeout on a cursor
            connect_kwargs: Extra keyword arguments for ``connect``
        """
        self._connect = connect
        self.connection_string = connection_string
        self.paramstyle = paramstyle
        self.apply_timeout = apply_timeout
        self.connect_kwargs = connect_kwargs or {}
        self.in_transaction = False
        self._raw: Any = None
        self._state = ConnectionState.CLOSED

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def raw(self) -> Any:
        """The underlying driver connection"""
        if self._raw is None or self._state != ConnectionState.OPEN:
            raise ConnectionUnavailableError("The connection is not open.")
        return self._raw

    def open(self) -> None:
        if self._state == ConnectionState.OPEN:
            return
        try:
            self._raw = self._connect(self.connection_string, **self.connect_kwargs)
        except Exception:
            self._state = ConnectionState.BROKEN
            raise
        self._state = ConnectionState.OPEN

    def close(self) -> None:
        raw, self._raw = self._raw, None
        self._state = ConnectionState.CLOSED
        self.in_transaction = False
        if raw is not None:
            raw.close()

    def create_command(self) -> 'DbApiCommand':
        return DbApiCommand(connection=self)

    def begin_transaction(self) -> DbTransaction:
        if self._state != ConnectionState.OPEN:
            raise ConnectionUnavailableError("A transaction requires an open connection.")
        return DbTransaction(self)

    def commit_unless_in_transaction(self) -> None:
        if not self.in_transaction:
            self.raw.commit()


class DbApiCommand(DriverCommand):
    """PEP 249 command adapter; one cursor per execute primitive"""

    connection: DbApiConnection

    def __init__(self, connection: Optional[DbApiConnection] = None, **kwargs):
        super().__init__(connection=connection, **kwargs)
        self.last_row_id: Optional[int] = None

    def _open_cursor(self) -> Any:
        if self.connection is None:
            raise ConnectionUnavailableError("No connection was set for this command object.")
        cursor = self.connection.raw.cursor()
        if self.timeout > 0 and self.connection.apply_timeout is not None:
            self.connection.apply_timeout(cursor, self.timeout)
        return cursor

    def _execute(self, cursor: Any) -> None:
        if self.command_type == CommandType.STORED_PROCEDURE:
            if not hasattr(cursor, "callproc"):
                raise NotSupportedError("The driver does not support stored procedures.")
            cursor.callproc(self.text, [parameter.value for parameter in self.parameters])
            return

        bound = self.parameters.bind(self.connection.paramstyle)
        if bound is None:
            cursor.execute(self.text)
        else:
            cursor.execute(self.text, bound)

    def execute_non_query(self) -> int:
        cursor = self._open_cursor()
        try:
            self._execute(cursor)
            rows_affected = cursor.rowcount
            self.last_row_id = getattr(cursor, "lastrowid", None)
            self.connection.commit_unless_in_transaction()
        finally:
            cursor.close()
        return rows_affected if rows_affected is not None else -1

    def execute_scalar(self) -> Any:
        cursor = self._open_cursor()
        try:
            self._execute(cursor)
            row = cursor.fetchone() if cursor.description else None
            self.connection.commit_unless_in_transaction()
        finally:
            cursor.close()
        if not row:
            return None
        return row[0]

    def execute_reader(self, on_close: Optional[Callable[[], None]] = None) -> DataReader:
        """
        Execute and return a reader over the live cursor

        Outside an explicit transaction the work is committed when the reader
        is closed, before ``on_close`` runs.
        """
        cursor = self._open_cursor()
        try:
            self._execute(cursor)
        except Exception:
            cursor.close()
            raise

        connection = self.connection

        def release() -> None:
            try:
                if connection.state == ConnectionState.OPEN:
                    connection.commit_unless_in_transaction()
            finally:
                if on_close is not None:
                    on_close()

        return DataReader(cursor, on_close=release)
