"""
Pytest configuration and shared fixtures
Provides an in-memory driver that records every connection and command it creates
"""

import pytest
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from data_execution.driver import (
    ConnectionState,
    DriverCommand,
    DriverConnection,
    DriverParameterCollection,
    DriverTransaction,
)
from data_execution.executor import DataManager
from data_execution.reader import DataReader
from fault_handling.options import TransientFaultHandlingOptions
from fault_handling.retry_handler import TransientFaultPolicy


class RowsResult:
    """Scripted reader outcome: column names plus rows"""

    def __init__(self, columns, rows):
        self.columns = columns
        self.rows = list(rows)


class FakeCursor:
    def __init__(self, result: RowsResult):
        self.description = [(name, None, None, None, None, None, None) for name in result.columns]
        self._rows = iter(result.rows)
        self.closed = False

    def fetchone(self):
        return next(self._rows, None)

    def close(self):
        self.closed = True


class CountingParameterCollection(DriverParameterCollection):
    def __init__(self):
        super().__init__()
        self.clear_count = 0

    def clear(self):
        self.clear_count += 1
        super().clear()


class FakeTransaction(DriverTransaction):
    def __init__(self):
        self.committed = False
        self.rolled_back = False

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True


class FakeCommand(DriverCommand):
    def __init__(self, connection, database):
        super().__init__(connection=connection)
        self.parameters = CountingParameterCollection()
        self.database = database
        self.executed_with = None
        self.closed = False

    def _run(self):
        self.executed_with = {parameter.key: parameter.value for parameter in self.parameters}
        self.database.executions.append((self.text, self.executed_with, self.timeout))
        return self.database.next_outcome()

    def execute_non_query(self):
        return self._run()

    def execute_scalar(self):
        return self._run()

    def execute_reader(self, on_close=None):
        result = self._run()
        return DataReader(FakeCursor(result), on_close=on_close)

    def close(self):
        self.closed = True


class FakeConnection(DriverConnection):
    def __init__(self, database):
        self.database = database
        self._state = ConnectionState.CLOSED
        self.open_count = 0
        self.close_count = 0

    @property
    def state(self):
        return self._state

    def open(self):
        self.open_count += 1
        if self.database.open_errors:
            self._state = ConnectionState.BROKEN
            raise self.database.open_errors.pop(0)
        self._state = ConnectionState.OPEN

    def close(self):
        self.close_count += 1
        self._state = ConnectionState.CLOSED
        if self.database.close_error is not None:
            raise self.database.close_error

    def create_command(self):
        command = FakeCommand(self, self.database)
        self.database.commands.append(command)
        return command

    def begin_transaction(self):
        return FakeTransaction()


class FakeDatabase:
    """
    Scripted outcomes consumed one per execute call

    An outcome that is an exception instance is raised; anything else is returned.
    """

    def __init__(self):
        self.outcomes = []
        self.open_errors = []
        self.close_error = None
        self.connections = []
        self.commands = []
        self.executions = []

    def script(self, *outcomes):
        self.outcomes.extend(outcomes)
        return self

    def next_outcome(self):
        if not self.outcomes:
            raise AssertionError("No scripted outcome left")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def connect(self):
        connection = FakeConnection(self)
        self.connections.append(connection)
        return connection


class FakeDataManager(DataManager):
    """DataManager over FakeDatabase; identity is scripted like any scalar"""

    database: FakeDatabase = None

    def create_connection(self, descriptor):
        return self.database.connect()

    def execute_identity_core(self, descriptor, parameters):
        return self.execute_scalar(descriptor, parameters)


class TransientError(Exception):
    """Error the test classifier treats as transient"""
    pass


def is_test_transient(error):
    return isinstance(error, TransientError)


@pytest.fixture
def project_root_path():
    """Path to project root"""
    return project_root


@pytest.fixture
def fake_database():
    """Scriptable in-memory database"""
    return FakeDatabase()


@pytest.fixture
def sleeps():
    """Recorded waits requested by a policy"""
    return []


@pytest.fixture
def make_policy(sleeps):
    """Factory for policies that record waits instead of sleeping"""
    def factory(retry_attempts=5, recovery_wait_time=5.0, enabled=True,
                is_transient_fault=is_test_transient, **kwargs):
        options = TransientFaultHandlingOptions(
            retry_attempts=retry_attempts,
            recovery_wait_time=recovery_wait_time,
            enable_transient_fault_recovery=enabled
        )
        return TransientFaultPolicy(options, is_transient_fault=is_transient_fault,
                                    sleep=sleeps.append, **kwargs)
    return factory


@pytest.fixture
def make_manager(fake_database, make_policy):
    """Factory for FakeDataManager instances bound to fake_database"""
    def factory(policy=None, hooks=None):
        manager = FakeDataManager(
            "fake://test",
            fault_policy=policy or make_policy(),
            hooks=hooks
        )
        manager.database = fake_database
        return manager
    return factory


@pytest.fixture
def transient_error_type():
    return TransientError


@pytest.fixture
def rows_result():
    return RowsResult


# Configure pytest
def pytest_configure(config):
    """Pytest configuration"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
