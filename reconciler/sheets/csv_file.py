import csv
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Sequence, Tuple

from .memory import MemorySheet

logger = logging.getLogger(__name__)


class CsvSheet(MemorySheet):
    """A sheet persisted to a CSV file.

    The file is reloaded whenever its mtime or size differs from what this
    sheet last read or wrote, so rows and columns added by another writer are
    kept. Every mutation rewrites the file in full through a temp file that
    replaces the existing one, so a crash never leaves a half-written sheet.
    """

    def __init__(self, path, name: str = "", header: Sequence[str] = ()):
        self.path = Path(path)
        self._stamp: Optional[Tuple[int, int]] = None
        super().__init__(name=name or self.path.stem)
        if self.path.exists():
            self._load()
            logger.info(f"Loaded sheet {self.name!r} from {self.path} ({len(self._rows)} rows)")
        elif header:
            self.set_header(header)

    def _file_stamp(self) -> Optional[Tuple[int, int]]:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return st.st_mtime_ns, st.st_size

    def _load(self) -> None:
        with self.path.open(newline="", encoding="utf-8") as f:
            self._rows = [list(r) for r in csv.reader(f)]
        self._recount()
        self._stamp = self._file_stamp()

    def _sync(self) -> None:
        stamp = self._file_stamp()
        if stamp is None or stamp == self._stamp:
            return
        logger.info(f"Sheet {self.name!r} changed on disk; reloading {self.path}")
        self._load()

    def _changed(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
                csv.writer(f).writerows(self._rows)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        self._stamp = self._file_stamp()
