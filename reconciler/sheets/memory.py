import logging
from typing import Dict, List, Sequence

from .base import Sheet

logger = logging.getLogger(__name__)


def _cell(value) -> str:
    if value is None:
        return ""
    return str(value)


class MemorySheet(Sheet):
    def __init__(self, name: str = "", header: Sequence[str] = ()):
        self.name = name
        self._rows: List[List[str]] = []
        self._cols = 0
        if header:
            self._rows.append([_cell(h) for h in header])
            self._cols = len(self._rows[0])

    def _recount(self) -> None:
        self._cols = max((len(r) for r in self._rows), default=0)

    def _grow(self, width: int) -> None:
        if width > self._cols:
            self._cols = width

    def _sync(self) -> None:
        """Hook for subclasses whose backing store can change underneath them."""

    def _changed(self) -> None:
        """Hook for persistent subclasses."""

    def header(self) -> List[str]:
        self._sync()
        if not self._rows:
            return []
        return list(self._rows[0])

    def set_header(self, names: Sequence[str]) -> None:
        self._sync()
        header = [_cell(h) for h in names]
        if self._rows:
            self._rows[0] = header
            self._recount()
        else:
            self._rows.append(header)
            self._grow(len(header))
        self._changed()

    def last_row(self) -> int:
        self._sync()
        return len(self._rows)

    def read_row(self, row: int) -> List[str]:
        self._sync()
        if row < 1 or row > len(self._rows):
            raise IndexError(f"Row {row} out of range for sheet {self.name!r}")
        values = list(self._rows[row - 1])
        if len(values) < self._cols:
            values.extend([""] * (self._cols - len(values)))
        return values

    def read_column(self, col: int) -> List[str]:
        self._sync()
        return [r[col] if col < len(r) else "" for r in self._rows[1:]]

    def write_cells(self, row: int, values: Dict[int, str]) -> None:
        self._sync()
        if row < 2 or row > len(self._rows):
            raise IndexError(f"Row {row} out of range for sheet {self.name!r}")
        target = self._rows[row - 1]
        for col, value in values.items():
            if col >= len(target):
                target.extend([""] * (col + 1 - len(target)))
            target[col] = _cell(value)
        self._grow(len(target))
        self._changed()

    def append_rows(self, rows: Sequence[Sequence[str]]) -> int:
        self._sync()
        if not self._rows:
            raise ValueError(f"Sheet {self.name!r} has no header row")
        first = len(self._rows) + 1
        for row in rows:
            values = [_cell(v) for v in row]
            self._rows.append(values)
            self._grow(len(values))
        if rows:
            self._changed()
        return first

    def clear(self) -> None:
        self._sync()
        del self._rows[1:]
        self._recount()
        self._changed()
