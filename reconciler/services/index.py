import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from ..normalize import to_utc_iso
from ..schemas.ledger import IndexReport
from ..sheets.base import Sheet

if TYPE_CHECKING:
    from .ledger import LedgerStore

logger = logging.getLogger(__name__)

INDEX_HEADER = ["payment_id", "row", "updated_at"]
PATIENT_INDEX_HEADER = ["patient_id", "rows", "updated_at"]


def _now() -> str:
    return to_utc_iso(datetime.now(timezone.utc))


def _ensure_header(sheet: Sheet, header: List[str]) -> None:
    current = sheet.header()
    if current[: len(header)] != header:
        sheet.set_header(header)


def _parse_row(value: str) -> Optional[int]:
    try:
        row = int(str(value).strip())
    except ValueError:
        return None
    return row if row >= 2 else None


class IdentityIndex:
    """payment_id -> ledger row number, kept in its own sheet.

    Entries are advisory. A missing or wrong entry only costs the ledger a
    column scan; :meth:`verify` and :meth:`rebuild` are the offline repair
    tools.
    """

    def __init__(self, sheet: Sheet):
        self.sheet = sheet
        _ensure_header(sheet, INDEX_HEADER)
        self._entries: Optional[Dict[str, Tuple[int, Optional[int]]]] = None

    def _load(self) -> Dict[str, Tuple[int, Optional[int]]]:
        if self._entries is None:
            keys = self.sheet.read_column(0)
            rows = self.sheet.read_column(1)
            entries: Dict[str, Tuple[int, Optional[int]]] = {}
            for offset, key in enumerate(keys):
                key = key.strip()
                if not key:
                    continue
                raw = rows[offset] if offset < len(rows) else ""
                # Later entries win, matching append order
                entries[key] = (offset + 2, _parse_row(raw))
            self._entries = entries
        return self._entries

    def lookup(self, key: str) -> Optional[int]:
        entry = self._load().get(key)
        return entry[1] if entry else None

    def upsert(self, key: str, row: int, ts: Optional[str] = None) -> None:
        if not key or row < 2:
            return
        ts = ts or _now()
        entries = self._load()
        existing = entries.get(key)
        if existing:
            index_row = existing[0]
            self.sheet.write_cells(index_row, {1: str(row), 2: ts})
        else:
            index_row = self.sheet.append_row([key, str(row), ts])
        entries[key] = (index_row, row)

    def discard(self, key: str) -> None:
        entries = self._load()
        existing = entries.get(key)
        if not existing:
            return
        self.sheet.write_cells(existing[0], {1: "", 2: _now()})
        entries[key] = (existing[0], None)

    def entries(self) -> Dict[str, int]:
        return {k: v[1] for k, v in self._load().items() if v[1] is not None}

    def verify(self, ledger: "LedgerStore") -> IndexReport:
        actual = ledger.scan_keys()
        indexed = self.entries()

        missing = sorted(k for k in actual if k not in indexed)
        stale = sorted(k for k, row in indexed.items() if k in actual and actual[k] != row)
        orphaned = sorted(k for k in indexed if k not in actual)

        report = IndexReport(
            checked=len(actual),
            missing=missing,
            stale=stale,
            orphaned=orphaned,
            consistent=not (missing or stale or orphaned),
        )
        if not report.consistent:
            logger.warning(
                f"Identity index {self.sheet.name!r} inconsistent: "
                f"missing={len(missing)} stale={len(stale)} orphaned={len(orphaned)}"
            )
        return report

    def rebuild(self, ledger: "LedgerStore") -> int:
        positions = ledger.scan_keys()
        ts = _now()
        self.sheet.clear()
        if positions:
            self.sheet.append_rows([[k, str(row), ts] for k, row in positions.items()])
        self._entries = None
        logger.info(f"Rebuilt identity index {self.sheet.name!r}: {len(positions)} entries")
        return len(positions)


class PatientRowIndex:
    """patient_id -> most recent ledger rows for that patient, newest first."""

    def __init__(self, sheet: Sheet, keep: int = 30):
        self.sheet = sheet
        self.keep = keep
        _ensure_header(sheet, PATIENT_INDEX_HEADER)

    def _find(self, patient_id: str) -> Tuple[int, List[int]]:
        index_row = self.sheet.find_in_column(0, patient_id)
        if not index_row:
            return 0, []
        csv_rows = self.sheet.read_row(index_row)[1]
        rows = [r for r in (_parse_row(p) for p in csv_rows.split(",")) if r is not None]
        return index_row, rows

    def _write(self, patient_id: str, index_row: int, rows: List[int]) -> None:
        uniq = sorted(set(rows), reverse=True)[: self.keep]
        csv_rows = ",".join(str(r) for r in uniq)
        if index_row:
            self.sheet.write_cells(index_row, {1: csv_rows, 2: _now()})
        else:
            self.sheet.append_row([patient_id, csv_rows, _now()])

    def rows_for(self, patient_id: str) -> List[int]:
        return self._find(patient_id.strip())[1]

    def add_row(self, patient_id: str, row: int) -> None:
        patient_id = (patient_id or "").strip()
        if not patient_id or row < 2:
            return
        index_row, rows = self._find(patient_id)
        self._write(patient_id, index_row, rows + [row])

    def merge(self, old_patient_id: str, new_patient_id: str) -> None:
        old_row, old_rows = self._find(old_patient_id)
        if not old_row:
            return
        new_row, new_rows = self._find(new_patient_id)
        self._write(new_patient_id, new_row, new_rows + old_rows)
        self.sheet.write_cells(old_row, {1: "", 2: _now()})

    def rebuild(self, ledger: "LedgerStore") -> int:
        grouped: Dict[str, List[int]] = {}
        for row, record in ledger.iter_rows():
            pid = record.get("patient_id", "")
            if pid:
                grouped.setdefault(pid, []).append(row)
        self.sheet.clear()
        for pid, rows in grouped.items():
            self._write(pid, 0, rows)
        logger.info(f"Rebuilt patient index {self.sheet.name!r}: {len(grouped)} patients")
        return len(grouped)
