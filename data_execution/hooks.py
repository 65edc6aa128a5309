"""
Command Hooks - Ordered before/after callbacks around each logical operation
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import structlog

from .commands import CommandDescriptor, ParameterSet

logger = structlog.get_logger(__name__)


@dataclass
class CommandEvent:
    """What a hook sees about the operation it surrounds"""
    operation: str
    descriptor: CommandDescriptor
    parameters: ParameterSet
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


HookCallback = Callable[[CommandEvent], None]


class CommandHooks:
    """
    Synchronous pipeline of callbacks run around DataManager operations

    ``before`` callbacks run in registration order ahead of the first attempt;
    an exception raised by one aborts the operation. ``after`` callbacks run
    once the operation has completed, successfully or not.
    """

    def __init__(self):
        self._before: List[HookCallback] = []
        self._after: List[HookCallback] = []

    def before(self, callback: HookCallback) -> HookCallback:
        self._before.append(callback)
        return callback

    def after(self, callback: HookCallback) -> HookCallback:
        self._after.append(callback)
        return callback

    def run_before(self, event: CommandEvent) -> None:
        for callback in self._before:
            callback(event)

    def run_after(self, event: CommandEvent) -> None:
        """
        Run after-callbacks

        On a failed operation, errors raised by callbacks are logged and dropped
        so the operation's own exception is the one that propagates.
        """
        for callback in self._after:
            if event.error is None:
                callback(event)
                continue
            try:
                callback(event)
            except Exception as e:
                logger.warning(
                    "command_hook_failed",
                    operation=event.operation,
                    hook=getattr(callback, '__name__', repr(callback)),
                    error=str(e)
                )

    def __len__(self) -> int:
        return len(self._before) + len(self._after)
