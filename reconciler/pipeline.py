import logging
import re
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional

from .config import Settings, get_settings
from .schemas.ledger import IndexRebuildResponse, IndexReport, MirrorSyncSummary, TranscriptionSummary
from .services.events import EventRouter, RouteOutcome
from .services.guard import ConcurrencyGuard
from .services.index import IdentityIndex, PatientRowIndex
from .services.ledger import LedgerStore
from .services.merge import IdentityMergeService, MergeResult
from .services.mirror import MirrorSync, MirrorWriter, RestMirrorWriter, SqlMirrorWriter
from .services.notifier import CacheInvalidationNotifier
from .services.transcription import transcribe_rows
from .sheets import CsvSheet, MemorySheet, Sheet

logger = logging.getLogger(__name__)

LEDGER_SHEET = "ledger"
INDEX_SHEET = "pay_master_index"
PATIENT_INDEX_SHEET = "pid_webhook_index"

_TENANT_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class InvalidTenantError(ValueError):
    pass


class ReconciliationPipeline:
    """Everything that belongs to one ledger instance.

    The ledger, its indexes and its guard are private to the pipeline. Mirror
    sync and cache invalidation run in :meth:`run_followups`, outside the
    guard.
    """

    def __init__(
        self,
        tenant_id: str,
        ledger: LedgerStore,
        guard: ConcurrencyGuard,
        mirror_writer: Optional[MirrorWriter],
        notifier: CacheInvalidationNotifier,
        merge_lock_timeout: float = 30.0,
    ):
        self.tenant_id = tenant_id
        self.ledger = ledger
        self.guard = guard
        self.mirror = MirrorSync(mirror_writer, tenant_id=tenant_id, source=self.current_row)
        self.notifier = notifier
        self.merge_service = IdentityMergeService(ledger, guard, merge_lock_timeout)
        self.router = EventRouter(ledger, guard, self.merge_service, ledger.tz)

    @classmethod
    def from_sheets(
        cls,
        tenant_id: str,
        ledger_sheet: Sheet,
        index_sheet: Sheet,
        patient_sheet: Sheet,
        mirror_writer: Optional[MirrorWriter] = None,
        notifier: Optional[CacheInvalidationNotifier] = None,
        tz: str = "Asia/Tokyo",
        lock_timeout: float = 8.0,
        merge_lock_timeout: float = 30.0,
        patient_index_keep: int = 30,
    ) -> "ReconciliationPipeline":
        ledger = LedgerStore(
            ledger_sheet,
            index=IdentityIndex(index_sheet),
            patient_index=PatientRowIndex(patient_sheet, keep=patient_index_keep),
            tz=tz,
        )
        return cls(
            tenant_id=tenant_id,
            ledger=ledger,
            guard=ConcurrencyGuard(f"{tenant_id}/{ledger_sheet.name}", lock_timeout),
            mirror_writer=mirror_writer,
            notifier=notifier or CacheInvalidationNotifier(),
            merge_lock_timeout=merge_lock_timeout,
        )

    @classmethod
    def in_memory(cls, tenant_id: str = "default", **kwargs) -> "ReconciliationPipeline":
        return cls.from_sheets(
            tenant_id,
            MemorySheet(LEDGER_SHEET),
            MemorySheet(INDEX_SHEET),
            MemorySheet(PATIENT_INDEX_SHEET),
            **kwargs,
        )

    def handle_event(self, payload: Any) -> RouteOutcome:
        return self.router.route(payload)

    def run_followups(self, outcome: RouteOutcome) -> None:
        if outcome.records:
            self.mirror.sync_rows(outcome.records)
        if outcome.invalidate_patient_id:
            self.notifier.invalidate(outcome.invalidate_patient_id)

    def get_row(self, payment_id: str) -> Optional[Dict[str, Any]]:
        with self.guard.hold():
            return self.ledger.get(payment_id)

    def current_row(self, payment_id: str) -> Optional[Dict[str, Any]]:
        """Mirror source: the ledger row as it stands now, not as an event saw it."""
        return self.get_row(payment_id)

    def merge_patients(self, old_patient_id: str, new_patient_id: str) -> MergeResult:
        result = self.merge_service.merge(old_patient_id, new_patient_id)
        if result.records:
            self.mirror.sync_rows(result.records)
        return result

    def transcribe(self, rows: List[Mapping[str, Any]]) -> TranscriptionSummary:
        return transcribe_rows(self.ledger, self.guard, rows, mirror=self.mirror)

    def resync_mirror(self) -> MirrorSyncSummary:
        with self.guard.hold(self.merge_service.lock_timeout_seconds):
            records = [record for _, record in self.ledger.iter_rows()]
        return self.mirror.sync_rows(records)

    def verify_index(self) -> IndexReport:
        with self.guard.hold():
            return self.ledger.index.verify(self.ledger)

    def rebuild_index(self) -> IndexRebuildResponse:
        with self.guard.hold(self.merge_service.lock_timeout_seconds):
            entries = self.ledger.index.rebuild(self.ledger)
            patients = self.ledger.patient_index.rebuild(self.ledger)
        return IndexRebuildResponse(entries=entries, patients=patients)


def build_mirror_writer(settings: Settings) -> Optional[MirrorWriter]:
    backend = settings.mirror_backend.lower()
    if backend == "sql":
        from .database import SessionLocal

        return SqlMirrorWriter(SessionLocal)
    if backend == "rest":
        if not settings.supabase_url or not settings.supabase_key:
            logger.warning("MIRROR_BACKEND=rest but SUPABASE_URL / SUPABASE_KEY not set; mirror disabled")
            return None
        return RestMirrorWriter(settings.supabase_url, settings.supabase_key, timeout=settings.mirror_timeout_seconds)
    if backend != "none":
        logger.warning(f"Unknown MIRROR_BACKEND {settings.mirror_backend!r}; mirror disabled")
    return None


class PipelineRegistry:
    """Lazily creates one pipeline per tenant. Tenants never share a ledger or a guard."""

    def __init__(
        self,
        settings: Settings,
        mirror_writer: Optional[MirrorWriter] = None,
        notifier: Optional[CacheInvalidationNotifier] = None,
    ):
        self.settings = settings
        self.mirror_writer = mirror_writer
        self.notifier = notifier or CacheInvalidationNotifier()
        self._pipelines: Dict[str, ReconciliationPipeline] = {}
        self._lock = Lock()

    def _sheet(self, tenant_id: str, name: str) -> Sheet:
        if not self.settings.ledger_dir:
            return MemorySheet(name)
        return CsvSheet(Path(self.settings.ledger_dir) / tenant_id / f"{name}.csv", name=name)

    def get(self, tenant_id: Optional[str] = None) -> ReconciliationPipeline:
        tenant_id = tenant_id or self.settings.default_tenant
        if not _TENANT_ID.match(tenant_id):
            raise InvalidTenantError(f"Invalid tenant id: {tenant_id!r}")

        with self._lock:
            pipeline = self._pipelines.get(tenant_id)
            if pipeline is None:
                pipeline = ReconciliationPipeline.from_sheets(
                    tenant_id,
                    self._sheet(tenant_id, LEDGER_SHEET),
                    self._sheet(tenant_id, INDEX_SHEET),
                    self._sheet(tenant_id, PATIENT_INDEX_SHEET),
                    mirror_writer=self.mirror_writer,
                    notifier=self.notifier,
                    tz=self.settings.ledger_timezone,
                    lock_timeout=self.settings.lock_timeout_seconds,
                    merge_lock_timeout=self.settings.merge_lock_timeout_seconds,
                    patient_index_keep=self.settings.patient_index_keep,
                )
                self._pipelines[tenant_id] = pipeline
                logger.info(f"Opened ledger for tenant {tenant_id!r}")
            return pipeline


@lru_cache()
def get_registry() -> PipelineRegistry:
    settings = get_settings()
    return PipelineRegistry(
        settings,
        mirror_writer=build_mirror_writer(settings),
        notifier=CacheInvalidationNotifier.from_settings(),
    )
