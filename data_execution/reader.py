"""
Data Reader - Forward-only, read-once cursor over command results

Once returned by DataManager.execute_reader the reader owns the connection
it was produced on; closing the reader (explicitly, through ``with`` or by
reading past the last row) closes the connection exactly once.
"""

from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


class DataReader:
    """Forward-only cursor that closes its connection on dispose"""

    def __init__(self, cursor: Any, on_close: Optional[Callable[[], None]] = None):
        """
        Initialize data reader

        Args:
            cursor: Executed DB-API cursor positioned before the first row
            on_close: Callback releasing the owning connection
        """
        self._cursor = cursor
        self._on_close = on_close
        self._row: Optional[Tuple[Any, ...]] = None
        self._closed = False
        self._description = cursor.description or ()

    @property
    def field_count(self) -> int:
        return len(self._description)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def read(self) -> bool:
        """
        Advance to the next row

        Returns:
            True if a row is available, False when the results are exhausted
            (the reader closes itself at that point)
        """
        if self._closed:
            return False

        row = self._cursor.fetchone()
        if row is None:
            self._row = None
            self.close()
            return False

        self._row = tuple(row)
        return True

    def get_value(self, ordinal: int) -> Any:
        """Value of the column at ``ordinal`` in the current row"""
        if self._row is None:
            raise LookupError("No current row; call read() first")
        if ordinal < 0 or ordinal >= self.field_count:
            raise IndexError(f"Ordinal {ordinal} is out of range (field count {self.field_count})")
        return self._row[ordinal]

    def get_name(self, ordinal: int) -> str:
        if ordinal < 0 or ordinal >= self.field_count:
            raise IndexError(f"Ordinal {ordinal} is out of range (field count {self.field_count})")
        return self._description[ordinal][0]

    def get_ordinal(self, name: str) -> int:
        for ordinal, column in enumerate(self._description):
            if column[0] == name:
                return ordinal
        raise KeyError(name)

    def column_names(self) -> List[str]:
        return [column[0] for column in self._description]

    def columns(self) -> List[Tuple[str, Any]]:
        """Name/value pairs of the current row"""
        return [(self.get_name(ordinal), self.get_value(ordinal)) for ordinal in range(self.field_count)]

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.columns())

    def close(self) -> None:
        """Close the cursor and release the owning connection (idempotent)"""
        if self._closed:
            return
        self._closed = True

        try:
            self._cursor.close()
        except Exception as e:
            logger.warning("data_reader_cursor_close_failed", error=str(e))
        finally:
            on_close, self._on_close = self._on_close, None
            if on_close is not None:
                on_close()

    dispose = close

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        while self.read():
            yield self._row

    def __enter__(self) -> 'DataReader':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<DataReader fields={self.field_count} {state}>"
