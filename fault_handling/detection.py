"""
Transient Fault Detection - Predicates classifying exceptions as transient

The safe default is ``never_transient``: an operation is only repeated when a
provider-specific classifier says the fault is transient.
"""

from typing import Callable, Iterable, Iterator, Optional, Sequence, Tuple, Type

TransientFaultPredicate = Callable[[BaseException], bool]

# Message fragments that indicate a fault expected to clear on its own
DEFAULT_TRANSIENT_MESSAGES = (
    'timeout expired',
    'the wait operation timed out',
    'the semaphore timeout period has expired',
    'connection timeout',
    'temporarily unavailable',
    'service unavailable',
    'network error',
    'throttled',
    'rate limit',
)


def never_transient(error: BaseException) -> bool:
    """Default classifier: nothing is retried"""
    return False


def flatten_exception_chain(error: BaseException) -> Iterator[BaseException]:
    """Yield an exception followed by its causes/contexts, each once"""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


class MessagePatternDetector:
    """Transient when any message in the exception chain contains a known fragment"""

    def __init__(self, patterns: Iterable[str] = DEFAULT_TRANSIENT_MESSAGES):
        self.patterns = tuple(pattern.lower() for pattern in patterns)

    def __call__(self, error: BaseException) -> bool:
        for exc in flatten_exception_chain(error):
            message = str(exc).lower()
            if any(pattern in message for pattern in self.patterns):
                return True
        return False


class ErrorCodeDetector:
    """
    Transient when an exception in the chain carries a listed error code

    Args:
        transient_codes: Codes that mark a fault as transient
        code_attribute: Attribute holding the driver error code (e.g. ``pgcode``)
        fatal_prefixes: Code prefixes that are never transient, even if the
            exception type is otherwise considered transient
        transient_types: Driver exception types treated as transient when they
            carry no fatal code
    """

    def __init__(self,
                 transient_codes: Iterable[str],
                 code_attribute: str = 'code',
                 fatal_prefixes: Sequence[str] = (),
                 transient_types: Tuple[Type[BaseException], ...] = ()):
        self.transient_codes = frozenset(str(code) for code in transient_codes)
        self.code_attribute = code_attribute
        self.fatal_prefixes = tuple(fatal_prefixes)
        self.transient_types = transient_types

    def __call__(self, error: BaseException) -> bool:
        for exc in flatten_exception_chain(error):
            code = getattr(exc, self.code_attribute, None)
            if code:
                code = str(code)
                if self.fatal_prefixes and code.startswith(self.fatal_prefixes):
                    return False
                if code in self.transient_codes:
                    return True
            if self.transient_types and isinstance(exc, self.transient_types):
                return True
        return False


def any_of(*predicates: TransientFaultPredicate) -> TransientFaultPredicate:
    """Combine classifiers; transient when any of them says so"""
    def predicate(error: BaseException) -> bool:
        return any(check(error) for check in predicates)
    return predicate
