from .base import Sheet
from .memory import MemorySheet
from .csv_file import CsvSheet

__all__ = [
    "Sheet",
    "MemorySheet",
    "CsvSheet",
]
