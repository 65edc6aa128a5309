"""
PostgreSQL Binding
Executes commands through psycopg2, one connection per attempt
"""

import uuid
from typing import Any, Iterable

import psycopg2
import structlog

from data_execution.commands import CommandDescriptor, DataParameter, ParameterSet
from data_execution.driver import DbApiConnection
from data_execution.executor import DataManager
from fault_handling.detection import ErrorCodeDetector, MessagePatternDetector

logger = structlog.get_logger(__name__)

# Serialization failures, deadlocks, connection loss, server shutdown/startup, too many connections
POSTGRES_TRANSIENT_CODES = (
    '40001',
    '40P01',
    '08000',
    '08001',
    '08003',
    '08004',
    '08006',
    '57P01',
    '57P02',
    '57P03',
    '53300',
)

# Integrity constraint violations and syntax/access errors
POSTGRES_FATAL_PREFIXES = ('23', '42')


class PostgresTransientFaultDetector:
    """
    Classify psycopg2 exceptions

    Transient when the SQLSTATE is in POSTGRES_TRANSIENT_CODES, when the error is
    an OperationalError/InterfaceError without a fatal code, or when the message
    matches a known timeout/unavailability pattern.
    """

    def __init__(self, extra_codes: Iterable[str] = ()):
        self._codes = ErrorCodeDetector(
            POSTGRES_TRANSIENT_CODES + tuple(extra_codes),
            code_attribute='pgcode',
            fatal_prefixes=POSTGRES_FATAL_PREFIXES,
            transient_types=(psycopg2.OperationalError, psycopg2.InterfaceError)
        )
        self._messages = MessagePatternDetector()

    def __call__(self, error: BaseException) -> bool:
        return self._codes(error) or self._messages(error)


def apply_statement_timeout(cursor: Any, seconds: int) -> None:
    """Bound the session's statement time; PostgreSQL takes milliseconds"""
    cursor.execute("SET statement_timeout = %s", (seconds * 1000,))


class PostgresDataManager(DataManager):
    """DataManager bound to PostgreSQL via psycopg2"""

    default_fault_detector = staticmethod(PostgresTransientFaultDetector())

    def create_connection(self, descriptor: CommandDescriptor) -> DbApiConnection:
        return DbApiConnection(
            psycopg2.connect,
            self.connection_string,
            paramstyle="pyformat",
            apply_timeout=apply_statement_timeout
        )

    def prepare_parameter(self, parameter: DataParameter) -> DataParameter:
        # psycopg2 does not adapt UUID unless register_uuid() was called globally
        if isinstance(parameter.value, uuid.UUID):
            return DataParameter(parameter.name, str(parameter.value), parameter.db_type)
        return parameter

    def execute_identity_core(self, descriptor: CommandDescriptor, parameters: ParameterSet) -> Any:
        """Run the insert and ``SELECT lastval()`` as one batch on the same connection"""
        text = descriptor.text.rstrip().rstrip(';')
        return self.execute_scalar(descriptor.with_text(f"{text}; SELECT lastval()"), parameters)
