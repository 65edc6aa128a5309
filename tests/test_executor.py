"""
Tests for Data Manager
Tests per-attempt command lifecycle, cleanup and connection ownership
"""

import asyncio
import threading
from decimal import Decimal
import pytest
from unittest.mock import Mock
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from data_execution.commands import CommandDescriptor, CommandType, ParameterSet
from data_execution.driver import ConnectionState
from data_execution.errors import ConnectionUnavailableError, ConversionError
from data_execution.hooks import CommandHooks
from fault_handling.errors import OperationCancelledError
from fault_handling.options import DataSourceSettings, TransientFaultHandlingOptions

SELECT = CommandDescriptor("SELECT name FROM widgets WHERE id = %(id)s")
INSERT = CommandDescriptor("INSERT INTO widgets (name) VALUES (%(name)s)")


class TestNonQuery:
    """Test execute_non_query"""

    def test_returns_rows_affected(self, make_manager, fake_database):
        """Test driver result is returned unchanged"""
        fake_database.script(3)
        manager = make_manager()

        assert manager.execute_non_query(INSERT, {"name": "widget"}) == 3

        text, bound, timeout = fake_database.executions[0]
        assert text == INSERT.text
        assert bound == {"name": "widget"}
        assert timeout == 30

    def test_success_clears_parameters_and_closes(self, make_manager, fake_database):
        """Test cleanup after a successful attempt"""
        fake_database.script(1)
        make_manager().execute_non_query(INSERT, {"name": "widget"})

        command = fake_database.commands[0]
        connection = fake_database.connections[0]
        assert command.parameters.clear_count == 1
        assert len(command.parameters) == 0
        assert connection.state == ConnectionState.CLOSED
        assert connection.close_count == 1
        assert command.closed

    def test_failure_clears_parameters_and_closes(self, make_manager, fake_database):
        """Test cleanup after a failing attempt"""
        error = ValueError("duplicate key")
        fake_database.script(error)

        with pytest.raises(ValueError) as exc_info:
            make_manager().execute_non_query(INSERT, {"name": "widget"})

        assert exc_info.value is error
        assert fake_database.commands[0].parameters.clear_count == 1
        assert fake_database.connections[0].state == ConnectionState.CLOSED


class TestRetries:
    """Test per-attempt behavior under the fault policy"""

    def test_each_attempt_uses_fresh_command(self, make_manager, make_policy, fake_database,
                                             sleeps, transient_error_type):
        """Test two transient failures then success"""
        fake_database.script(transient_error_type("1"), transient_error_type("2"), "widget")
        manager = make_manager(policy=make_policy(retry_attempts=3, recovery_wait_time=1.0))
        parameters = ParameterSet.coerce({"id": 7})

        assert manager.execute_scalar(SELECT, parameters) == "widget"

        assert sleeps == [3.0, 5.0]
        assert len(fake_database.connections) == 3
        assert len({id(command) for command in fake_database.commands}) == 3
        for command, connection in zip(fake_database.commands, fake_database.connections):
            assert command.parameters.clear_count == 1
            assert connection.close_count == 1
        assert [bound for _, bound, _ in fake_database.executions] == [{"id": 7}] * 3
        assert parameters.names() == ["id"]

    def test_exhaustion_rethrows_last_driver_error(self, make_manager, make_policy, fake_database,
                                                   transient_error_type):
        """Test the original driver exception surfaces after the last attempt"""
        first, second = transient_error_type("first"), transient_error_type("second")
        fake_database.script(first, second)
        manager = make_manager(policy=make_policy(retry_attempts=2, recovery_wait_time=1.0))

        with pytest.raises(transient_error_type) as exc_info:
            manager.execute_non_query(INSERT)

        assert exc_info.value is second
        assert all(c.state == ConnectionState.CLOSED for c in fake_database.connections)

    def test_disabled_recovery_runs_once(self, make_manager, make_policy, fake_database,
                                         transient_error_type):
        """Test the switch turns retries off"""
        fake_database.script(transient_error_type("down"))
        manager = make_manager(policy=make_policy(enabled=False))

        with pytest.raises(transient_error_type):
            manager.execute_non_query(INSERT)

        assert len(fake_database.executions) == 1

    def test_open_failure_is_retried_unwrapped(self, make_manager, make_policy, fake_database,
                                               transient_error_type):
        """Test connection open errors reach the classifier as-is"""
        fake_database.open_errors.append(transient_error_type("refused"))
        fake_database.script(1)
        manager = make_manager(policy=make_policy(retry_attempts=2, recovery_wait_time=1.0))

        assert manager.execute_non_query(INSERT) == 1

        broken, healthy = fake_database.connections
        assert broken.close_count == 1
        assert broken.state == ConnectionState.CLOSED
        assert fake_database.commands[0].parameters.clear_count == 1
        assert healthy.open_count == 1


class TestCleanupFailures:
    """Test cleanup errors"""

    def test_cleanup_error_does_not_mask_attempt_error(self, make_manager, fake_database):
        """Test the attempt's own exception wins over a failing close"""
        fake_database.close_error = RuntimeError("close failed")
        fake_database.script(ValueError("syntax error"))

        with pytest.raises(ValueError, match="syntax error"):
            make_manager().execute_non_query(INSERT)

    def test_cleanup_error_after_success_propagates(self, make_manager, fake_database):
        """Test a failing close after success is reported"""
        fake_database.close_error = RuntimeError("close failed")
        fake_database.script(1)

        with pytest.raises(RuntimeError, match="close failed"):
            make_manager().execute_non_query(INSERT)

        assert fake_database.commands[0].parameters.clear_count == 1

    def test_missing_connection(self, make_manager, fake_database):
        """Test a command without connection is rejected after clearing parameters"""
        manager = make_manager()
        built = []

        def get_command_core(descriptor, parameters):
            command = fake_database.connect().create_command()
            command.connection = None
            built.append(command)
            return command

        manager.get_command_core = get_command_core

        with pytest.raises(ConnectionUnavailableError):
            manager.execute_non_query(INSERT)

        assert built[0].parameters.clear_count == 1
        assert fake_database.executions == []

    def test_parameter_binding_failure_releases_command(self, make_manager, fake_database):
        """Test a parameter that cannot be prepared leaves nothing bound or open"""
        manager = make_manager()
        prepared = []

        def prepare_parameter(parameter):
            if prepared:
                raise TypeError(f"cannot adapt {parameter.name}")
            prepared.append(parameter)
            return parameter

        manager.prepare_parameter = prepare_parameter

        with pytest.raises(TypeError, match="cannot adapt"):
            manager.execute_non_query(INSERT, {"name": "widget", "owner": "ops"})

        command = fake_database.commands[0]
        assert command.parameters.clear_count == 1
        assert len(command.parameters) == 0
        assert command.closed
        assert fake_database.connections[0].state != ConnectionState.OPEN
        assert fake_database.executions == []

    def test_reader_dispose_failure_closes_connection(self, make_manager, fake_database, rows_result):
        """Test a failing command dispose after a reader was produced still releases its connection"""
        manager = make_manager()
        fake_database.script(rows_result(["id"], [(1,)]))

        def get_command_core(descriptor, parameters):
            command = type(manager).get_command_core(manager, descriptor, parameters)
            command.close = Mock(side_effect=RuntimeError("dispose failed"))
            return command

        manager.get_command_core = get_command_core

        with pytest.raises(RuntimeError, match="dispose failed"):
            manager.execute_reader(SELECT, {"id": 1})

        connection = fake_database.connections[0]
        assert connection.state == ConnectionState.CLOSED
        assert connection.close_count == 1


class TestReader:
    """Test execute_reader connection ownership"""

    def test_reader_owns_connection(self, make_manager, fake_database, rows_result):
        """Test the connection stays open until the reader closes"""
        fake_database.script(rows_result(["id", "name"], [(1, "a"), (2, "b")]))

        reader = make_manager().execute_reader(SELECT, {"id": 1})
        connection = fake_database.connections[0]

        assert connection.state == ConnectionState.OPEN
        assert fake_database.commands[0].parameters.clear_count == 1

        assert [row for row in reader] == [(1, "a"), (2, "b")]
        assert connection.state == ConnectionState.CLOSED
        assert connection.close_count == 1

        reader.close()
        assert connection.close_count == 1

    def test_reader_failure_closes_connection(self, make_manager, fake_database):
        """Test the executor closes the connection when no reader was produced"""
        fake_database.script(ValueError("no such table"))

        with pytest.raises(ValueError):
            make_manager().execute_reader(SELECT)

        assert fake_database.connections[0].state == ConnectionState.CLOSED

    def test_exists(self, make_manager, fake_database, rows_result):
        """Test execute_exists reports rows and releases the connection"""
        fake_database.script(rows_result(["x"], [(1,)]), rows_result(["x"], []))
        manager = make_manager()

        assert manager.execute_exists(SELECT) is True
        assert manager.execute_exists(SELECT) is False
        assert all(c.state == ConnectionState.CLOSED for c in fake_database.connections)


class TestScalarConversion:
    """Test execute_scalar_as and identity retrieval"""

    def test_scalar_null_sentinel(self, make_manager, fake_database):
        """Test no rows yields None"""
        fake_database.script(None)

        assert make_manager().execute_scalar(SELECT) is None

    def test_scalar_as(self, make_manager, fake_database):
        """Test raw values are converted"""
        fake_database.script("42", "1.5", None)
        manager = make_manager()

        assert manager.execute_scalar_as_int(SELECT) == 42
        assert manager.execute_scalar_as_decimal(SELECT) == Decimal("1.5")
        assert manager.execute_scalar_as_str(SELECT) is None

    def test_typed_scalars_honor_cancellation(self, make_manager, fake_database):
        """Test typed scalar helpers stop before any attempt once cancelled"""
        cancelled = threading.Event()
        cancelled.set()
        manager = make_manager()

        with pytest.raises(OperationCancelledError):
            manager.execute_scalar_as_int(SELECT, {"id": 1}, cancel_event=cancelled)
        with pytest.raises(OperationCancelledError):
            manager.execute_scalar_as_uuid(SELECT, cancel_event=cancelled)

        assert fake_database.connections == []
        assert fake_database.executions == []

    def test_typed_scalar_cancelled_between_retries(self, make_manager, make_policy, fake_database,
                                                    transient_error_type):
        """Test a cancel during the retry wait ends a typed scalar call"""
        cancelled = threading.Event()
        policy = make_policy(retry_attempts=3, recovery_wait_time=1.0,
                             on_retry=lambda state, error: cancelled.set())
        fake_database.script(transient_error_type("busy"), "7")

        with pytest.raises(OperationCancelledError):
            make_manager(policy=policy).execute_scalar_as_float(SELECT, cancel_event=cancelled)

        assert len(fake_database.executions) == 1

    def test_conversion_failure_not_retried(self, make_manager, make_policy, fake_database):
        """Test ConversionError surfaces after a single attempt"""
        fake_database.script("abc")
        manager = make_manager(policy=make_policy(is_transient_fault=lambda e: True))

        with pytest.raises(ConversionError):
            manager.execute_scalar_as(SELECT, int)

        assert len(fake_database.executions) == 1

    def test_identity_values(self, make_manager, fake_database):
        """Test identity conversions"""
        fake_database.script(5, 2 ** 40, "12")
        manager = make_manager()

        assert manager.execute_identity_int32(INSERT) == 5
        assert manager.execute_identity_int64(INSERT) == 2 ** 40
        assert manager.execute_identity_decimal(INSERT) == Decimal(12)

    def test_identity_int32_range(self, make_manager, fake_database):
        """Test identities beyond 32 bits are rejected"""
        fake_database.script(2 ** 40)

        with pytest.raises(ConversionError):
            make_manager().execute_identity_int32(INSERT)

    def test_identity_requires_text(self, make_manager, fake_database):
        """Test stored procedures are rejected before execution"""
        procedure = CommandDescriptor("insert_widget", CommandType.STORED_PROCEDURE)

        with pytest.raises(ValueError, match="CommandType.TEXT"):
            make_manager().execute_identity_int64(procedure)

        assert fake_database.executions == []


class TestHooks:
    """Test before/after hooks"""

    def test_hooks_wrap_logical_operation(self, make_manager, make_policy, fake_database,
                                          transient_error_type):
        """Test hooks run once per operation, not per attempt"""
        hooks = CommandHooks()
        events = []
        hooks.before(lambda event: events.append(("before", event.operation)))
        hooks.after(lambda event: events.append(("after", event.result)))
        fake_database.script(transient_error_type("retry"), 9)
        manager = make_manager(policy=make_policy(retry_attempts=2, recovery_wait_time=1.0), hooks=hooks)

        manager.execute_non_query(INSERT)

        assert events == [("before", "execute_non_query"), ("after", 9)]

    def test_after_hook_sees_error(self, make_manager, fake_database):
        """Test failures are reported to after hooks"""
        hooks = CommandHooks()
        seen = []
        hooks.after(lambda event: seen.append(event))
        error = ValueError("bad")
        fake_database.script(error)

        with pytest.raises(ValueError):
            make_manager(hooks=hooks).execute_scalar(SELECT)

        assert seen[0].error is error
        assert not seen[0].succeeded

    def test_failing_after_hook_does_not_mask_error(self, make_manager, fake_database):
        """Test after hook errors are dropped on failed operations"""
        hooks = CommandHooks()
        hooks.after(Mock(side_effect=RuntimeError("hook bug")))
        fake_database.script(ValueError("bad"))

        with pytest.raises(ValueError):
            make_manager(hooks=hooks).execute_scalar(SELECT)

    def test_before_hook_can_abort(self, make_manager, fake_database):
        """Test a raising before hook prevents execution"""
        hooks = CommandHooks()

        @hooks.before
        def deny(event):
            raise PermissionError("read-only")

        with pytest.raises(PermissionError):
            make_manager(hooks=hooks).execute_non_query(INSERT)

        assert fake_database.connections == []

    def test_failing_after_hook_closes_reader(self, make_manager, fake_database, rows_result):
        """Test a reader nobody receives does not keep its connection open"""
        hooks = CommandHooks()
        hooks.after(Mock(side_effect=RuntimeError("audit unavailable")))
        fake_database.script(rows_result(["name"], [("a",)]))

        with pytest.raises(RuntimeError, match="audit unavailable"):
            make_manager(hooks=hooks).execute_reader(SELECT, {"id": 1})

        assert fake_database.connections[0].state == ConnectionState.CLOSED

    def test_hooks_registered_after_construction(self, make_manager, fake_database):
        """Test an empty hook registry passed in is the one the manager runs"""
        hooks = CommandHooks()
        manager = make_manager(hooks=hooks)
        events = []
        hooks.before(lambda event: events.append("before"))
        hooks.after(lambda event: events.append("after"))
        fake_database.script(1)

        manager.execute_non_query(INSERT)

        assert manager.hooks is hooks
        assert manager.clone().hooks is hooks
        assert events == ["before", "after"]


class TestManagerConstruction:
    """Test construction helpers"""

    def test_connection_string_required(self, make_manager):
        """Test empty connection strings are rejected"""
        manager_type = type(make_manager())

        with pytest.raises(ValueError):
            manager_type("")

    def test_clone(self, make_manager):
        """Test clone shares connection string, policy and hooks"""
        manager = make_manager()

        clone = manager.clone()

        assert type(clone) is type(manager)
        assert clone is not manager
        assert clone.connection_string == manager.connection_string
        assert clone.fault_policy is manager.fault_policy
        assert clone.hooks is manager.hooks

    def test_from_settings(self, make_manager):
        """Test settings and options build a configured manager"""
        manager_type = type(make_manager())
        settings = DataSourceSettings(connection_string="fake://orders", command_timeout=12)
        options = TransientFaultHandlingOptions(retry_attempts=2)

        manager = manager_type.from_settings(settings, options)

        assert manager.connection_string == "fake://orders"
        assert manager.fault_policy.retry_attempts == 2
        assert manager.command("SELECT 1").timeout_seconds == 12

    def test_default_policy_never_retries(self, make_manager):
        """Test managers without a policy use the conservative classifier"""
        manager = type(make_manager())("fake://orders")

        assert manager.fault_policy.is_transient_fault(TimeoutError("Timeout expired.")) is False


class TestAsyncOperations:
    """Test asyncio variants"""

    def test_async_non_query_retries(self, make_manager, make_policy, fake_database, transient_error_type):
        """Test async execution follows the same per-attempt cleanup"""
        waits = []

        async def fake_sleep(delay):
            waits.append(delay)

        fake_database.script(transient_error_type("busy"), 4)
        policy = make_policy(retry_attempts=2, recovery_wait_time=1.0, async_sleep=fake_sleep)
        manager = make_manager(policy=policy)

        assert asyncio.run(manager.execute_non_query_async(INSERT)) == 4
        assert waits == [3.0]
        assert [c.parameters.clear_count for c in fake_database.commands] == [1, 1]
        assert all(c.state == ConnectionState.CLOSED for c in fake_database.connections)

    def test_async_scalar(self, make_manager, fake_database):
        """Test async scalar returns the value"""
        fake_database.script("widget")

        assert asyncio.run(make_manager().execute_scalar_async(SELECT)) == "widget"
