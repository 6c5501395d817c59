from abc import ABC, abstractmethod
from typing import Dict, List, Sequence


class Sheet(ABC):
    """A header-first grid of string cells.

    Row numbers are 1-based with the header on row 1, so the first data row
    is row 2. Column indexes are 0-based positions in the header.
    """

    name: str = ""

    @abstractmethod
    def header(self) -> List[str]:
        pass

    @abstractmethod
    def set_header(self, names: Sequence[str]) -> None:
        pass

    @abstractmethod
    def last_row(self) -> int:
        """0 for an empty sheet, 1 when only the header exists."""
        pass

    @abstractmethod
    def read_row(self, row: int) -> List[str]:
        pass

    @abstractmethod
    def read_column(self, col: int) -> List[str]:
        """Values of ``col`` for every data row, starting at row 2."""
        pass

    @abstractmethod
    def write_cells(self, row: int, values: Dict[int, str]) -> None:
        pass

    @abstractmethod
    def append_rows(self, rows: Sequence[Sequence[str]]) -> int:
        """Append rows after the last row and return the first row number written."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every data row, keeping the header."""
        pass

    def append_row(self, row: Sequence[str]) -> int:
        return self.append_rows([row])

    def find_in_column(self, col: int, value: str) -> int:
        """Exact, case-sensitive whole-cell match. Returns the row number or 0."""
        if not value:
            return 0
        for offset, cell in enumerate(self.read_column(col)):
            if cell == value:
                return offset + 2
        return 0
