"""
Fault Handling Options - Validated configuration for the transient fault policy

Options are passed explicitly to the policy and to data managers; ``from_env``
builds them from environment variables (optionally seeded from a .env file).
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RECOVERY_WAIT_SECONDS = 5.0
DEFAULT_BACKOFF_CAP_EXPONENT = 5
DEFAULT_COMMAND_TIMEOUT_SECONDS = 30.0

_TRUE_VALUES = ("true", "1", "yes", "on")


def load_env_file(env_file: Optional[Union[str, Path]] = None) -> bool:
    """
    Load environment variables from a .env file without overriding existing ones

    Args:
        env_file: Path to the file (defaults to ``.env`` in the working directory)

    Returns:
        True if a file was found and loaded
    """
    path = Path(env_file) if env_file else Path.cwd() / '.env'
    if not path.exists():
        return False
    load_dotenv(path, override=False)
    logger.debug("env_file_loaded", path=str(path))
    return True


def _seconds(value: Any) -> Any:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return value


class TransientFaultHandlingOptions(BaseModel):
    """Options controlling retry attempts, backoff and the recovery switch"""

    model_config = ConfigDict(validate_assignment=True)

    retry_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1)
    recovery_wait_time: float = Field(default=DEFAULT_RECOVERY_WAIT_SECONDS, gt=0)
    enable_transient_fault_recovery: bool = True
    maximum_allowed_latency: Optional[float] = Field(default=None, gt=0)
    backoff_cap_exponent: int = Field(default=DEFAULT_BACKOFF_CAP_EXPONENT, ge=0)
    jitter: float = Field(default=0.0, ge=0)

    @field_validator('recovery_wait_time', 'maximum_allowed_latency', 'jitter', mode='before')
    @classmethod
    def _accept_timedelta(cls, value: Any) -> Any:
        return _seconds(value)

    @classmethod
    def from_env(cls, prefix: str = "DATA_", env_file: Optional[Union[str, Path]] = None) -> 'TransientFaultHandlingOptions':
        """
        Build options from environment variables

        Reads ``{prefix}RETRY_ATTEMPTS``, ``{prefix}RECOVERY_WAIT_SECONDS``,
        ``{prefix}ENABLE_TRANSIENT_FAULT_RECOVERY``, ``{prefix}MAXIMUM_ALLOWED_LATENCY``
        and ``{prefix}RETRY_JITTER_SECONDS``; unset variables keep their defaults.
        """
        load_env_file(env_file)

        values: Dict[str, Any] = {}
        env = {
            'retry_attempts': os.getenv(f"{prefix}RETRY_ATTEMPTS"),
            'recovery_wait_time': os.getenv(f"{prefix}RECOVERY_WAIT_SECONDS"),
            'maximum_allowed_latency': os.getenv(f"{prefix}MAXIMUM_ALLOWED_LATENCY"),
            'jitter': os.getenv(f"{prefix}RETRY_JITTER_SECONDS"),
        }
        for key, raw in env.items():
            if raw is not None and raw.strip():
                values[key] = raw.strip()

        enabled = os.getenv(f"{prefix}ENABLE_TRANSIENT_FAULT_RECOVERY")
        if enabled is not None and enabled.strip():
            values['enable_transient_fault_recovery'] = enabled.strip().lower() in _TRUE_VALUES

        return cls(**values)


class DataSourceSettings(BaseModel):
    """Connection configuration handed explicitly to a data manager"""

    model_config = ConfigDict(frozen=True)

    connection_string: str = Field(min_length=1)
    command_timeout: float = Field(default=DEFAULT_COMMAND_TIMEOUT_SECONDS, gt=0)

    @field_validator('command_timeout', mode='before')
    @classmethod
    def _accept_timedelta(cls, value: Any) -> Any:
        return _seconds(value)

    @property
    def default_timeout(self) -> timedelta:
        return timedelta(seconds=self.command_timeout)

    @classmethod
    def from_env(cls, prefix: str = "DATA_", env_file: Optional[Union[str, Path]] = None) -> 'DataSourceSettings':
        """
        Build settings from ``{prefix}CONNECTION_STRING`` and ``{prefix}COMMAND_TIMEOUT_SECONDS``

        Raises:
            ValueError: If no connection string is configured
        """
        load_env_file(env_file)

        connection_string = os.getenv(f"{prefix}CONNECTION_STRING")
        if not connection_string:
            raise ValueError(f"{prefix}CONNECTION_STRING required")

        values: Dict[str, Any] = {'connection_string': connection_string}
        timeout = os.getenv(f"{prefix}COMMAND_TIMEOUT_SECONDS")
        if timeout:
            values['command_timeout'] = timeout
        return cls(**values)
