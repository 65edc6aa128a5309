"""
Data Manager - Executes command descriptors against a data source with transient fault handling
"""

import asyncio
import datetime
import threading
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Optional, Type, TypeVar

import structlog

from fault_handling.detection import TransientFaultPredicate, never_transient
from fault_handling.options import DataSourceSettings, TransientFaultHandlingOptions
from fault_handling.retry_handler import TransientFaultPolicy

from .commands import CommandDescriptor, CommandType, DataParameter, ParameterInput, ParameterSet
from .conversion import FormatProvider, convert_scalar
from .driver import ConnectionState, DriverCommand, DriverConnection
from .errors import ConnectionUnavailableError, ConversionError
from .hooks import CommandEvent, CommandHooks
from .reader import DataReader

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_INT32_RANGE = (-2 ** 31, 2 ** 31 - 1)
_INT64_RANGE = (-2 ** 63, 2 ** 63 - 1)


def _truncate_sql(sql: str, limit: int = 150) -> str:
    return sql if len(sql) <= limit else f"{sql[:limit]}...(truncated)"


class DataManager(ABC):
    """
    Base class for data-source bindings

    Every public operation builds a fresh connection-bound command per attempt,
    opens the connection, runs one execute primitive and, whatever happens,
    clears the command's parameter collection. Non-reader operations close the
    connection before returning; readers take ownership of it.

    Each attempt runs inside ``fault_policy.execute``; driver exceptions are
    never wrapped so the policy (and the caller) see the original type.
    """

    # Classifier used when no fault policy is supplied
    default_fault_detector: TransientFaultPredicate = staticmethod(never_transient)

    def __init__(self,
                 connection_string: str,
                 fault_policy: Optional[TransientFaultPolicy] = None,
                 hooks: Optional[CommandHooks] = None,
                 default_timeout: Optional[datetime.timedelta] = None):
        """
        Initialize data manager

        Args:
            connection_string: Opaque connection string handed to the driver
            fault_policy: Transient fault policy (defaults to one using default_fault_detector)
            hooks: Before/after callbacks run around each operation
            default_timeout: Timeout used by ``command()`` when none is given
        """
        if not connection_string:
            raise ValueError("connection_string required")

        self.connection_string = connection_string
        self.fault_policy = fault_policy if fault_policy is not None else self.create_default_policy()
        self.hooks = hooks if hooks is not None else CommandHooks()
        self.default_timeout = default_timeout or datetime.timedelta(seconds=30)

    @classmethod
    def from_settings(cls,
                      settings: DataSourceSettings,
                      options: Optional[TransientFaultHandlingOptions] = None,
                      **kwargs) -> 'DataManager':
        """Create a manager from explicit connection settings and retry options"""
        fault_policy = kwargs.pop('fault_policy', None)
        if fault_policy is None and options is not None:
            fault_policy = TransientFaultPolicy(options, is_transient_fault=cls.default_fault_detector)
        return cls(
            settings.connection_string,
            fault_policy=fault_policy,
            default_timeout=settings.default_timeout,
            **kwargs
        )

    def create_default_policy(self) -> TransientFaultPolicy:
        return TransientFaultPolicy(
            TransientFaultHandlingOptions(),
            is_transient_fault=self.default_fault_detector
        )

    def clone(self) -> 'DataManager':
        """New manager bound to the same connection string, policy and hooks"""
        return type(self)(
            self.connection_string,
            fault_policy=self.fault_policy,
            hooks=self.hooks,
            default_timeout=self.default_timeout
        )

    def command(self, text: str, command_type: CommandType = CommandType.TEXT,
                timeout: Optional[datetime.timedelta] = None) -> CommandDescriptor:
        """Build a descriptor using this manager's default timeout"""
        return CommandDescriptor(text, command_type, timeout or self.default_timeout)

    # -- binding hooks -----------------------------------------------------

    @abstractmethod
    def create_connection(self, descriptor: CommandDescriptor) -> DriverConnection:
        """Create a new, unopened driver connection for one attempt"""
        ...

    def prepare_parameter(self, parameter: DataParameter) -> DataParameter:
        """Adapt a parameter value to what the driver accepts"""
        return parameter

    def get_command_core(self, descriptor: CommandDescriptor, parameters: ParameterSet) -> DriverCommand:
        """
        Build a connection-bound driver command for one attempt

        Args:
            descriptor: Command to execute
            parameters: Parameters copied onto the driver command

        Returns:
            Driver command whose connection is not yet open
        """
        connection = self.create_connection(descriptor)
        command = connection.create_command()
        command.text = descriptor.text
        command.command_type = descriptor.command_type
        try:
            for parameter in parameters:
                command.parameters.add(self.prepare_parameter(parameter))
        except Exception as e:
            self._release_command(command, close_connection=True, error=e)
            raise
        return command

    # -- public operations -------------------------------------------------

    def execute_non_query(self,
                          descriptor: CommandDescriptor,
                          parameters: ParameterInput = None,
                          cancel_event: Optional[threading.Event] = None) -> int:
        """
        Execute a command and return the number of rows affected

        Args:
            descriptor: Command to execute
            parameters: Input parameters
            cancel_event: Optional event aborting pending retries

        Returns:
            Rows affected (-1 when the driver does not report it)
        """
        return self._execute_core(
            "execute_non_query", descriptor, parameters,
            lambda command: command.execute_non_query(),
            cancel_event=cancel_event
        )

    def execute_scalar(self,
                       descriptor: CommandDescriptor,
                       parameters: ParameterInput = None,
                       cancel_event: Optional[threading.Event] = None) -> Any:
        """
        Execute a command and return the first column of the first row

        Returns:
            The value, or None when the result set has no rows
        """
        return self._execute_core(
            "execute_scalar", descriptor, parameters,
            lambda command: command.execute_scalar(),
            cancel_event=cancel_event
        )

    def execute_reader(self,
                       descriptor: CommandDescriptor,
                       parameters: ParameterInput = None,
                       cancel_event: Optional[threading.Event] = None) -> DataReader:
        """
        Execute a command and return a forward-only reader

        The reader owns the connection; close it (or use it as a context manager)
        to release the connection.
        """
        return self._execute_core(
            "execute_reader", descriptor, parameters,
            lambda command: command.execute_reader(on_close=command.connection.close),
            cancel_event=cancel_event,
            transfers_connection=True
        )

    def execute_exists(self,
                       descriptor: CommandDescriptor,
                       parameters: ParameterInput = None,
                       cancel_event: Optional[threading.Event] = None) -> bool:
        """True when the command yields at least one row"""
        with self.execute_reader(descriptor, parameters, cancel_event) as reader:
            return reader.read()

    def execute_scalar_as(self,
                          descriptor: CommandDescriptor,
                          target_type: Type[T],
                          parameters: ParameterInput = None,
                          provider: Optional[FormatProvider] = None,
                          cancel_event: Optional[threading.Event] = None) -> Optional[T]:
        """
        Execute a scalar command and convert the value

        Raises:
            ConversionError: If the value cannot be coerced (never retried)
        """
        value = self.execute_scalar(descriptor, parameters, cancel_event)
        return convert_scalar(value, target_type, provider)

    def execute_scalar_as_int(self, descriptor: CommandDescriptor, parameters: ParameterInput = None,
                              provider: Optional[FormatProvider] = None,
                              cancel_event: Optional[threading.Event] = None) -> Optional[int]:
        return self.execute_scalar_as(descriptor, int, parameters, provider, cancel_event)

    def execute_scalar_as_float(self, descriptor: CommandDescriptor, parameters: ParameterInput = None,
                                provider: Optional[FormatProvider] = None,
                                cancel_event: Optional[threading.Event] = None) -> Optional[float]:
        return self.execute_scalar_as(descriptor, float, parameters, provider, cancel_event)

    def execute_scalar_as_decimal(self, descriptor: CommandDescriptor, parameters: ParameterInput = None,
                                  provider: Optional[FormatProvider] = None,
                                  cancel_event: Optional[threading.Event] = None) -> Optional[Decimal]:
        return self.execute_scalar_as(descriptor, Decimal, parameters, provider, cancel_event)

    def execute_scalar_as_bool(self, descriptor: CommandDescriptor, parameters: ParameterInput = None,
                               provider: Optional[FormatProvider] = None,
                               cancel_event: Optional[threading.Event] = None) -> Optional[bool]:
        return self.execute_scalar_as(descriptor, bool, parameters, provider, cancel_event)

    def execute_scalar_as_str(self, descriptor: CommandDescriptor, parameters: ParameterInput = None,
                              provider: Optional[FormatProvider] = None,
                              cancel_event: Optional[threading.Event] = None) -> Optional[str]:
        return self.execute_scalar_as(descriptor, str, parameters, provider, cancel_event)

    def execute_scalar_as_datetime(self, descriptor: CommandDescriptor, parameters: ParameterInput = None,
                                   provider: Optional[FormatProvider] = None,
                                   cancel_event: Optional[threading.Event] = None) -> Optional[datetime.datetime]:
        return self.execute_scalar_as(descriptor, datetime.datetime, parameters, provider, cancel_event)

    def execute_scalar_as_uuid(self, descriptor: CommandDescriptor, parameters: ParameterInput = None,
                               provider: Optional[FormatProvider] = None,
                               cancel_event: Optional[threading.Event] = None) -> Optional[uuid.UUID]:
        return self.execute_scalar_as(descriptor, uuid.UUID, parameters, provider, cancel_event)

    def execute_identity_int32(self, descriptor: CommandDescriptor, parameters: ParameterInput = None) -> int:
        """Execute an insert and return the generated identity as a 32-bit integer"""
        return self._identity_as_int(descriptor, parameters, _INT32_RANGE)

    def execute_identity_int64(self, descriptor: CommandDescriptor, parameters: ParameterInput = None) -> int:
        """Execute an insert and return the generated identity as a 64-bit integer"""
        return self._identity_as_int(descriptor, parameters, _INT64_RANGE)

    def execute_identity_decimal(self, descriptor: CommandDescriptor, parameters: ParameterInput = None) -> Decimal:
        """Execute an insert and return the generated identity as a Decimal"""
        value = self._execute_identity(descriptor, parameters)
        return convert_scalar(value, Decimal)

    @abstractmethod
    def execute_identity_core(self, descriptor: CommandDescriptor, parameters: ParameterSet) -> Any:
        """
        Execute an insert and return the raw identity value the data source generated

        Bindings supply the provider-specific retrieval (``lastval()``,
        ``lastrowid``, ...).
        """
        ...

    async def execute_non_query_async(self,
                                      descriptor: CommandDescriptor,
                                      parameters: ParameterInput = None,
                                      cancel_event: Optional[asyncio.Event] = None) -> int:
        """Asyncio variant of execute_non_query; attempts run in a worker thread"""
        return await self._execute_core_async(
            "execute_non_query", descriptor, parameters,
            lambda command: command.execute_non_query(),
            cancel_event=cancel_event
        )

    async def execute_scalar_async(self,
                                   descriptor: CommandDescriptor,
                                   parameters: ParameterInput = None,
                                   cancel_event: Optional[asyncio.Event] = None) -> Any:
        """Asyncio variant of execute_scalar; attempts run in a worker thread"""
        return await self._execute_core_async(
            "execute_scalar", descriptor, parameters,
            lambda command: command.execute_scalar(),
            cancel_event=cancel_event
        )

    # -- core --------------------------------------------------------------

    def _identity_as_int(self, descriptor: CommandDescriptor, parameters: ParameterInput, bounds) -> int:
        value = self._execute_identity(descriptor, parameters)
        identity = convert_scalar(value, int)
        if identity is None or not bounds[0] <= identity <= bounds[1]:
            raise ConversionError(value, int)
        return identity

    def _execute_identity(self, descriptor: CommandDescriptor, parameters: ParameterInput) -> Any:
        if descriptor.command_type != CommandType.TEXT:
            raise ValueError("This method only supports CommandType.TEXT descriptors.")
        return self.execute_identity_core(descriptor, ParameterSet.coerce(parameters))

    def _execute_core(self,
                      operation: str,
                      descriptor: CommandDescriptor,
                      parameters: ParameterInput,
                      invoker: Callable[[DriverCommand], T],
                      cancel_event: Optional[threading.Event] = None,
                      transfers_connection: bool = False) -> T:
        parameter_set = ParameterSet.coerce(parameters)
        event = CommandEvent(operation, descriptor, parameter_set)
        self.hooks.run_before(event)

        try:
            result = self.fault_policy.execute(
                lambda: self._invoke_command(descriptor, parameter_set, invoker, transfers_connection),
                cancel_event=cancel_event
            )
        except Exception as e:
            event.error = e
            self.hooks.run_after(event)
            raise

        event.result = result
        try:
            self.hooks.run_after(event)
        except Exception:
            if isinstance(result, DataReader):
                result.close()
            raise
        return result

    async def _execute_core_async(self,
                                  operation: str,
                                  descriptor: CommandDescriptor,
                                  parameters: ParameterInput,
                                  invoker: Callable[[DriverCommand], T],
                                  cancel_event: Optional[asyncio.Event] = None) -> T:
        parameter_set = ParameterSet.coerce(parameters)
        event = CommandEvent(operation, descriptor, parameter_set)
        self.hooks.run_before(event)

        try:
            result = await self.fault_policy.execute_async(
                lambda: asyncio.to_thread(self._invoke_command, descriptor, parameter_set, invoker, False),
                cancel_event=cancel_event
            )
        except Exception as e:
            event.error = e
            self.hooks.run_after(event)
            raise

        event.result = result
        self.hooks.run_after(event)
        return result

    def _invoke_command(self,
                        descriptor: CommandDescriptor,
                        parameters: ParameterSet,
                        invoker: Callable[[DriverCommand], T],
                        transfers_connection: bool) -> T:
        """One attempt: build, open, execute, then clean up"""
        command: Optional[DriverCommand] = None
        error: Optional[Exception] = None
        handed_off = False

        try:
            command = self.get_command_core(descriptor, parameters)
            command.timeout = descriptor.timeout_seconds
            self._open_connection(command)
            result = invoker(command)
            handed_off = transfers_connection
        except Exception as e:
            error = e
            logger.debug(
                "command_attempt_failed",
                sql=_truncate_sql(descriptor.text),
                parameters=parameters.names(),
                error_type=type(e).__name__,
                error=str(e)
            )
            raise
        finally:
            if command is not None:
                try:
                    self._release_command(command, close_connection=not handed_off, error=error)
                except Exception:
                    # reader never reaches the caller
                    if handed_off:
                        result.close()
                    raise
        return result

    def _open_connection(self, command: DriverCommand) -> None:
        if command.connection is None:
            raise ConnectionUnavailableError("No connection was set for this command object.")
        if command.connection.state != ConnectionState.OPEN:
            command.connection.open()

    def _release_command(self, command: DriverCommand, close_connection: bool, error: Optional[Exception]) -> None:
        """
        Clear parameters, close the connection unless handed off, dispose the command

        Cleanup failures while an attempt is already failing are logged and
        dropped so the attempt's own exception propagates.
        """
        steps = [command.parameters.clear]
        if close_connection and command.connection is not None:
            steps.append(lambda: self._close_connection(command.connection))
        steps.append(command.close)

        cleanup_error: Optional[Exception] = None
        for step in steps:
            try:
                step()
            except Exception as e:
                logger.warning(
                    "command_cleanup_failed",
                    error_type=type(e).__name__,
                    error=str(e),
                    suppressed=error is not None
                )
                if cleanup_error is None:
                    cleanup_error = e

        if cleanup_error is not None and error is None:
            raise cleanup_error

    @staticmethod
    def _close_connection(connection: DriverConnection) -> None:
        if connection.state != ConnectionState.CLOSED:
            connection.close()
