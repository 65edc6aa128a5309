"""
Scalar Conversion - Coerce raw scalar values using an explicit format context
"""

import datetime
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from .errors import ConversionError

T = TypeVar("T")


@dataclass(frozen=True)
class FormatProvider:
    """Culture-like context used when parsing textual scalar values"""
    name: str = "invariant"
    decimal_separator: str = "."
    group_separator: str = ","
    datetime_formats: Tuple[str, ...] = (
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%d %H:%M:%S.%f",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d",
    )
    true_values: Tuple[str, ...] = ("true", "1", "yes", "y", "t")
    false_values: Tuple[str, ...] = ("false", "0", "no", "n", "f")

    def normalize_number(self, text: str) -> str:
        """Rewrite a localized number into invariant form"""
        text = text.strip()
        if self.group_separator:
            text = text.replace(self.group_separator, "")
        if self.decimal_separator != ".":
            text = text.replace(self.decimal_separator, ".")
        return text


INVARIANT = FormatProvider()


def _to_decimal(value: Any, provider: FormatProvider) -> Decimal:
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, str):
        return Decimal(provider.normalize_number(value))
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def _to_int(value: Any, provider: FormatProvider) -> int:
    if isinstance(value, (bool, int)):
        return int(value)
    number = _to_decimal(value, provider)
    if number != number.to_integral_value():
        raise ValueError(f"{value!r} is not an integral value")
    return int(number)


def _to_float(value: Any, provider: FormatProvider) -> float:
    if isinstance(value, str):
        return float(provider.normalize_number(value))
    return float(value)


def _to_bool(value: Any, provider: FormatProvider) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, Decimal, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in provider.true_values:
        return True
    if text in provider.false_values:
        return False
    raise ValueError(f"{value!r} is not a recognized boolean")


def _to_datetime(value: Any, provider: FormatProvider) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day)
    text = str(value).strip()
    for fmt in provider.datetime_formats:
        try:
            return datetime.datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"{value!r} does not match any known datetime format")


def _to_date(value: Any, provider: FormatProvider) -> datetime.date:
    return _to_datetime(value, provider).date()


def _to_str(value: Any, provider: FormatProvider) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _to_uuid(value: Any, provider: FormatProvider) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, bytes) and len(value) == 16:
        return uuid.UUID(bytes=value)
    return uuid.UUID(str(value))


def _to_bytes(value: Any, provider: FormatProvider) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    raise TypeError(f"{type(value).__name__} cannot be converted to bytes")


_CONVERTERS: Dict[type, Callable[[Any, FormatProvider], Any]] = {
    int: _to_int,
    float: _to_float,
    Decimal: _to_decimal,
    bool: _to_bool,
    str: _to_str,
    datetime.datetime: _to_datetime,
    datetime.date: _to_date,
    uuid.UUID: _to_uuid,
    bytes: _to_bytes,
}


def convert_scalar(value: Any, target_type: Type[T], provider: Optional[FormatProvider] = None) -> Optional[T]:
    """
    Convert a raw scalar value to ``target_type``

    Args:
        value: Raw value returned by the driver
        target_type: Requested Python type
        provider: Format context (defaults to INVARIANT)

    Returns:
        The converted value, or None when the raw value is None

    Raises:
        ConversionError: If the value cannot be coerced
    """
    provider = provider or INVARIANT
    if value is None:
        return None
    if type(value) is target_type:
        return value

    converter = _CONVERTERS.get(target_type)
    if converter is None:
        raise ConversionError(value, target_type, provider.name)

    try:
        return converter(value, provider)
    except (ValueError, TypeError, ArithmeticError, InvalidOperation, UnicodeDecodeError) as e:
        raise ConversionError(value, target_type, provider.name) from e
