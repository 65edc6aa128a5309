"""
SQLite Binding
Executes commands through the standard library sqlite3 driver
"""

import sqlite3
import uuid
from decimal import Decimal
from typing import Any

import structlog

from data_execution.commands import CommandDescriptor, DataParameter, ParameterSet
from data_execution.driver import DbApiCommand, DbApiConnection
from data_execution.executor import DataManager
from fault_handling.detection import flatten_exception_chain

logger = structlog.get_logger(__name__)

SQLITE_TRANSIENT_MESSAGES = (
    'database is locked',
    'database table is locked',
    'database is busy',
)

# sqlite3's own default busy timeout, used when a descriptor asks for no limit
DEFAULT_BUSY_TIMEOUT_SECONDS = 5.0


class SqliteTransientFaultDetector:
    """Transient when an OperationalError in the chain reports a lock or busy database"""

    def __call__(self, error: BaseException) -> bool:
        for exc in flatten_exception_chain(error):
            if isinstance(exc, sqlite3.OperationalError):
                message = str(exc).lower()
                if any(pattern in message for pattern in SQLITE_TRANSIENT_MESSAGES):
                    return True
        return False


class SqliteDataManager(DataManager):
    """
    DataManager bound to a SQLite database file

    Every attempt opens its own connection, so ``:memory:`` databases do not
    survive between operations; use a file path (or a ``file:`` URI).
    """

    default_fault_detector = staticmethod(SqliteTransientFaultDetector())

    @property
    def database(self) -> str:
        return self.connection_string

    def create_connection(self, descriptor: CommandDescriptor) -> DbApiConnection:
        connect_kwargs = {
            'timeout': float(descriptor.timeout_seconds) or DEFAULT_BUSY_TIMEOUT_SECONDS,
        }
        if self.connection_string.startswith('file:'):
            connect_kwargs['uri'] = True
        return DbApiConnection(
            sqlite3.connect,
            self.connection_string,
            paramstyle="named",
            connect_kwargs=connect_kwargs
        )

    def prepare_parameter(self, parameter: DataParameter) -> DataParameter:
        if isinstance(parameter.value, (Decimal, uuid.UUID)):
            return DataParameter(parameter.name, str(parameter.value), parameter.db_type)
        return parameter

    def execute_identity_core(self, descriptor: CommandDescriptor, parameters: ParameterSet) -> Any:
        """Run the insert and read ``lastrowid`` from the same cursor"""
        return self._execute_core("execute_identity", descriptor, parameters, self._insert_row)

    @staticmethod
    def _insert_row(command: DbApiCommand) -> Any:
        command.execute_non_query()
        logger.debug("sqlite_row_inserted", last_row_id=command.last_row_id)
        return command.last_row_id
