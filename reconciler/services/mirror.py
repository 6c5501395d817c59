import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import httpx
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.order import OrderMirror, utcnow
from ..normalize import format_tracking_number, normalize_amount, parse_utc_iso
from ..schemas.ledger import MirrorSyncSummary

logger = logging.getLogger(__name__)

UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class MirrorError(Exception):
    pass


class SyncStatus(str, Enum):
    SYNCED = "SYNCED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass
class SyncResult:
    payment_id: str
    status: SyncStatus
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != SyncStatus.FAILED


def _or_none(value: str) -> Optional[str]:
    return value or None


def to_mirror_record(row: Mapping[str, str], tenant_id: Optional[str] = None) -> Dict[str, Any]:
    refunded_amount = normalize_amount(row.get("refunded_amount"))
    return {
        "id": row["payment_id"],
        "tenant_id": tenant_id,
        "patient_id": _or_none(row.get("patient_id", "")),
        "order_id": _or_none(row.get("order_id", "")),
        "product_code": _or_none(row.get("product_code", "")),
        "product_name": _or_none(row.get("items", "")),
        "amount": normalize_amount(row.get("amount")) or 0,
        "paid_at": parse_utc_iso(row.get("order_datetime")),
        "payment_status": row.get("payment_status") or "COMPLETED",
        "refund_status": _or_none(row.get("refund_status", "")),
        "refunded_amount": refunded_amount,
        "refunded_at": parse_utc_iso(row.get("refunded_at")),
        "refund_id": _or_none(row.get("refund_id", "")),
        "shipping_name": _or_none(row.get("ship_name", "")),
        "postal_code": _or_none(row.get("postal", "")),
        "address": _or_none(row.get("address", "")),
        "email": _or_none(row.get("email", "")),
        "phone": _or_none(row.get("phone", "")),
        "shipping_status": row.get("shipping_status") or "pending",
        "shipping_date": parse_utc_iso(row.get("shipping_date")),
        "tracking_number": _or_none(format_tracking_number(row.get("tracking_number"))),
        "carrier": _or_none(row.get("carrier", "")),
    }


class MirrorWriter(ABC):
    @abstractmethod
    def upsert(self, record: Dict[str, Any]) -> None:
        pass


class SqlMirrorWriter(MirrorWriter):
    """INSERT ... ON CONFLICT (id) DO UPDATE against the orders table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def upsert(self, record: Dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            dialect = db.get_bind().dialect.name
            insert = UPSERT_INSERTS.get(dialect)
            if insert is None:
                raise MirrorError(f"Upsert not supported for dialect {dialect!r}")

            values = dict(record, updated_at=utcnow())
            stmt = insert(OrderMirror).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[OrderMirror.id],
                set_={name: stmt.excluded[name] for name in values if name != "id"},
            )
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class RestMirrorWriter(MirrorWriter):
    """PostgREST (Supabase) upsert with merge-duplicates resolution."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0, table: str = "orders"):
        self.endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self.api_key = api_key
        self.timeout = timeout

    def upsert(self, record: Dict[str, Any]) -> None:
        payload = {
            k: (f"{v.isoformat()}Z" if isinstance(v, datetime) else v)
            for k, v in dict(record, updated_at=utcnow()).items()
        }
        resp = httpx.post(
            self.endpoint,
            params={"on_conflict": "id"},
            headers={
                "apikey": self.api_key,
                "Authorization": f"Bearer {self.api_key}",
                "Prefer": "resolution=merge-duplicates",
            },
            json=[payload],
            timeout=self.timeout,
        )
        resp.raise_for_status()


class MirrorSync:
    """Best-effort replication of ledger rows into the mirror.

    Never raises: every outcome comes back as a SyncResult so callers can log
    it without unwinding the ledger write that already succeeded.

    With a ``source`` the row handed in only names the payment; the current
    ledger row is re-read and written while holding the sync lock, so syncs
    finishing out of order never put an older snapshot over a newer one.
    """

    def __init__(
        self,
        writer: Optional[MirrorWriter],
        tenant_id: Optional[str] = None,
        source: Optional[Callable[[str], Optional[Mapping[str, str]]]] = None,
    ):
        self.writer = writer
        self.tenant_id = tenant_id
        self.source = source
        self._lock = Lock()

    def sync_row(self, row: Mapping[str, str]) -> SyncResult:
        payment_id = (row.get("payment_id") or "").strip()
        if not payment_id:
            return SyncResult(payment_id="", status=SyncStatus.SKIPPED, error="missing payment_id")
        if self.writer is None:
            return SyncResult(payment_id=payment_id, status=SyncStatus.SKIPPED, error="mirror disabled")

        with self._lock:
            try:
                current = self.source(payment_id) if self.source is not None else row
                if current is None:
                    return SyncResult(payment_id=payment_id, status=SyncStatus.SKIPPED, error="not in ledger")
                self.writer.upsert(to_mirror_record(current, self.tenant_id))
            except (SQLAlchemyError, httpx.HTTPError, MirrorError) as e:
                logger.error(f"Mirror sync failed for payment {payment_id}: {e}")
                return SyncResult(payment_id=payment_id, status=SyncStatus.FAILED, error=str(e))
            except Exception as e:
                logger.exception(f"Unexpected mirror sync failure for payment {payment_id}")
                return SyncResult(payment_id=payment_id, status=SyncStatus.FAILED, error=str(e))

        logger.debug(f"Mirror synced payment {payment_id}")
        return SyncResult(payment_id=payment_id, status=SyncStatus.SYNCED)

    def sync_rows(self, rows: Iterable[Mapping[str, str]]) -> MirrorSyncSummary:
        total = synced = failed = skipped = 0
        errors = []
        for row in rows:
            total += 1
            result = self.sync_row(row)
            if result.status == SyncStatus.SYNCED:
                synced += 1
            elif result.status == SyncStatus.FAILED:
                failed += 1
                errors.append(f"{result.payment_id}: {result.error}")
            else:
                skipped += 1

        if total:
            logger.info(f"Mirror sync: total={total} synced={synced} failed={failed} skipped={skipped}")
        return MirrorSyncSummary(total=total, synced=synced, failed=failed, skipped=skipped, errors=errors)
