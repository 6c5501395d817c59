import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from ..normalize import (
    infer_carrier,
    normalize_amount,
    normalize_email,
    normalize_key,
    normalize_name,
    normalize_phone,
    normalize_postal,
    to_utc_iso,
)
from ..sheets.base import Sheet
from .index import IdentityIndex, PatientRowIndex

logger = logging.getLogger(__name__)

KEY_FIELD = "payment_id"

LEDGER_FIELDS = [
    "order_datetime",
    "ship_name",
    "postal",
    "address",
    "email",
    "phone",
    "items",
    "amount",
    "billing_name",
    "payment_id",
    "product_code",
    "patient_id",
    "order_id",
    "payment_status",
    "refund_status",
    "refunded_amount",
    "refunded_at",
    "refund_id",
    "shipping_status",
    "shipping_date",
    "tracking_number",
    "carrier",
]

# Header names written by older versions of the sheet
HEADER_ALIASES = {
    "patient_id": ("patientId",),
    "product_code": ("productCode",),
    "ship_name": ("name（配送先）",),
    "billing_name": ("name（請求先）",),
}

TIMESTAMP_FIELDS = ("order_datetime", "refunded_at", "shipping_date")
AMOUNT_FIELDS = ("amount", "refunded_amount")
NAME_FIELDS = ("ship_name", "billing_name")


class LedgerError(Exception):
    pass


class MissingKeyError(LedgerError):
    pass


class UnknownFieldError(LedgerError):
    pass


class SkipReason(str, Enum):
    REFUND_PRESENT = "refund_present"
    FAILED_STATUS = "failed_status"
    MISSING_KEY = "missing_key"


@dataclass
class UpsertResult:
    payment_id: str
    row: int
    created: bool
    record: Dict[str, str]


@dataclass
class BatchResult:
    appended: int = 0
    merged: int = 0
    skipped: Counter = field(default_factory=Counter)
    records: List[Dict[str, str]] = field(default_factory=list)

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())


def exclusion_reason(record: Mapping[str, Any]) -> Optional[SkipReason]:
    """Why a batch-transcribed row must not enter the ledger, if at all.

    The first matching reason wins so a row is never counted twice.
    """
    if str(record.get("refund_status") or "").strip():
        return SkipReason.REFUND_PRESENT
    if str(record.get("payment_status") or "").strip().upper() == "FAILED":
        return SkipReason.FAILED_STATUS
    if not normalize_key(record.get(KEY_FIELD)):
        return SkipReason.MISSING_KEY
    return None


def normalize_record(record: Mapping[str, Any], tz: str) -> Dict[str, str]:
    """Canonical ledger values for the ledger fields present in ``record``."""
    out: Dict[str, str] = {}
    for name in LEDGER_FIELDS:
        if name not in record:
            continue
        value = record[name]
        if name == KEY_FIELD or name == "patient_id":
            out[name] = normalize_key(value)
        elif name == "phone":
            out[name] = normalize_phone(value)
        elif name == "email":
            out[name] = normalize_email(value)
        elif name == "postal":
            out[name] = normalize_postal(value)
        elif name in NAME_FIELDS:
            out[name] = normalize_name(value)
        elif name in TIMESTAMP_FIELDS:
            out[name] = to_utc_iso(value, tz) or ""
        elif name in AMOUNT_FIELDS:
            amount = normalize_amount(value)
            out[name] = "" if amount is None else str(amount)
        else:
            out[name] = "" if value is None else str(value).strip()

    if out.get("tracking_number") and not out.get("carrier"):
        carrier = infer_carrier(out["tracking_number"])
        if carrier:
            out["carrier"] = carrier
    return out


class HeaderMap:
    """Logical field -> physical column, resolved from the header row."""

    def __init__(self, header: List[str]):
        self.header = list(header)
        self.columns: Dict[str, int] = {}
        for i, name in enumerate(header):
            name = str(name or "").strip()
            if name and name not in self.columns:
                self.columns[name] = i

    def column(self, name: str) -> Optional[int]:
        if name in self.columns:
            return self.columns[name]
        for alias in HEADER_ALIASES.get(name, ()):
            if alias in self.columns:
                return self.columns[alias]
        return None

    def missing(self, names: Iterable[str]) -> List[str]:
        return [n for n in names if self.column(n) is None]

    def to_record(self, values: List[str]) -> Dict[str, str]:
        record = {}
        for name in LEDGER_FIELDS:
            col = self.column(name)
            record[name] = values[col] if col is not None and col < len(values) else ""
        return record

    def to_cells(self, fields: Mapping[str, str]) -> Dict[int, str]:
        cells = {}
        for name, value in fields.items():
            col = self.column(name)
            if col is None:
                raise UnknownFieldError(f"Ledger has no column for field {name!r}")
            cells[col] = value
        return cells

    def blank_row(self) -> List[str]:
        return [""] * len(self.header)


class LedgerStore:
    """Row store keyed by payment_id on top of a :class:`Sheet`.

    Columns are bound by header name once per operation, so other writers may
    insert or reorder columns between operations. Callers are expected to hold
    the ledger's ConcurrencyGuard around every mutating call.
    """

    def __init__(
        self,
        sheet: Sheet,
        index: Optional[IdentityIndex] = None,
        patient_index: Optional[PatientRowIndex] = None,
        tz: str = "Asia/Tokyo",
    ):
        self.sheet = sheet
        self.index = index
        self.patient_index = patient_index
        self.tz = tz

    def header_map(self) -> HeaderMap:
        header = self.sheet.header()
        hmap = HeaderMap(header)
        missing = hmap.missing(LEDGER_FIELDS)
        if missing:
            self.sheet.set_header(header + missing)
            logger.info(f"Added ledger columns to {self.sheet.name!r}: {', '.join(missing)}")
            hmap = HeaderMap(self.sheet.header())
        return hmap

    def _row_holds_key(self, row: int, col: int, key: str) -> bool:
        if row < 2 or row > self.sheet.last_row():
            return False
        values = self.sheet.read_row(row)
        return col < len(values) and values[col] == key

    def find_row_by_key(self, key: str, hmap: Optional[HeaderMap] = None) -> Optional[int]:
        if not key:
            return None
        hmap = hmap or self.header_map()
        col = hmap.column(KEY_FIELD)

        if self.index is not None:
            row = self.index.lookup(key)
            if row is not None:
                if self._row_holds_key(row, col, key):
                    return row
                logger.info(f"Stale index entry for payment {key} (row {row}); scanning ledger")

        row = self.sheet.find_in_column(col, key)
        if not row:
            if self.index is not None and self.index.lookup(key) is not None:
                self.index.discard(key)
            return None
        if self.index is not None:
            self.index.upsert(key, row)
        return row

    def read(self, row: int, hmap: Optional[HeaderMap] = None) -> Dict[str, str]:
        hmap = hmap or self.header_map()
        return hmap.to_record(self.sheet.read_row(row))

    def get(self, key: str) -> Optional[Dict[str, str]]:
        hmap = self.header_map()
        row = self.find_row_by_key(key, hmap)
        if not row:
            return None
        record = self.read(row, hmap)
        record["row"] = row
        return record

    def _touch_indexes(self, key: str, row: int, record: Mapping[str, str]) -> None:
        if self.index is not None:
            self.index.upsert(key, row)
        if self.patient_index is not None and record.get("patient_id"):
            self.patient_index.add_row(record["patient_id"], row)

    def upsert_row(
        self,
        key: str,
        fields: Mapping[str, str],
        hmap: Optional[HeaderMap] = None,
    ) -> UpsertResult:
        """Insert-if-absent, otherwise overwrite only the given fields."""
        if not key:
            raise MissingKeyError("payment_id is required")
        fields = {k: v for k, v in fields.items() if k != KEY_FIELD}
        hmap = hmap or self.header_map()
        cells = hmap.to_cells(fields)

        row = self.find_row_by_key(key, hmap)
        if row:
            if cells:
                self.sheet.write_cells(row, cells)
            created = False
        else:
            values = hmap.blank_row()
            values[hmap.column(KEY_FIELD)] = key
            for col, value in cells.items():
                values[col] = value
            row = self.sheet.append_row(values)
            created = True

        record = self.read(row, hmap)
        self._touch_indexes(key, row, record)
        logger.info(
            f"Ledger {'insert' if created else 'merge'} payment={key} row={row} "
            f"fields={','.join(sorted(fields)) or '-'}"
        )
        return UpsertResult(payment_id=key, row=row, created=created, record=record)

    def append_batch(self, rows: Iterable[Mapping[str, Any]]) -> BatchResult:
        """Bulk insert for backfill / operator transcription.

        Rows matching the exclusion rule are counted and dropped. A row whose
        payment_id is already ledgered (or repeated in the batch) is merged
        into the existing row instead of creating a duplicate.
        """
        hmap = self.header_map()
        result = BatchResult()
        pending: Dict[str, Dict[str, str]] = {}

        for raw in rows:
            reason = exclusion_reason(raw)
            if reason is not None:
                result.skipped[reason.value] += 1
                continue

            fields = normalize_record(raw, self.tz)
            key = fields.pop(KEY_FIELD)
            # Blank export cells never erase ledgered values
            fields = {name: value for name, value in fields.items() if value != ""}

            if key in pending:
                pending[key].update(fields)
                result.merged += 1
                continue

            if self.find_row_by_key(key, hmap):
                merged = self.upsert_row(key, fields, hmap)
                result.records.append(merged.record)
                result.merged += 1
                continue

            pending[key] = fields

        if pending:
            new_rows = []
            for key, fields in pending.items():
                values = hmap.blank_row()
                values[hmap.column(KEY_FIELD)] = key
                for col, value in hmap.to_cells(fields).items():
                    values[col] = value
                new_rows.append(values)

            first = self.sheet.append_rows(new_rows)
            for offset, key in enumerate(pending):
                row = first + offset
                record = self.read(row, hmap)
                self._touch_indexes(key, row, record)
                result.records.append(record)
            result.appended = len(pending)

        logger.info(
            f"Ledger batch on {self.sheet.name!r}: appended={result.appended} merged={result.merged} "
            f"skipped={dict(result.skipped)}"
        )
        return result

    def reassign_patient(self, old_patient_id: str, new_patient_id: str) -> List[Dict[str, str]]:
        """Rewrite patient_id on every row holding ``old_patient_id``."""
        hmap = self.header_map()
        col = hmap.column("patient_id")
        changed = []
        for offset, value in enumerate(self.sheet.read_column(col)):
            if value.strip() != old_patient_id:
                continue
            row = offset + 2
            self.sheet.write_cells(row, {col: new_patient_id})
            changed.append(self.read(row, hmap))
        return changed

    def scan_keys(self) -> Dict[str, int]:
        """payment_id -> row for every ledgered row (first occurrence wins)."""
        col = self.header_map().column(KEY_FIELD)
        positions: Dict[str, int] = {}
        for offset, value in enumerate(self.sheet.read_column(col)):
            if value and value not in positions:
                positions[value] = offset + 2
        return positions

    def iter_rows(self) -> Iterator[Tuple[int, Dict[str, str]]]:
        hmap = self.header_map()
        for row in range(2, self.sheet.last_row() + 1):
            record = self.read(row, hmap)
            if record.get(KEY_FIELD):
                yield row, record
