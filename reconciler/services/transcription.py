import logging
from typing import Any, List, Mapping

from ..schemas.ledger import TranscriptionSummary
from .guard import ConcurrencyGuard
from .ledger import LedgerStore, SkipReason
from .mirror import MirrorSync

logger = logging.getLogger(__name__)


def transcribe_rows(
    ledger: LedgerStore,
    guard: ConcurrencyGuard,
    rows: List[Mapping[str, Any]],
    mirror: MirrorSync = None,
    lock_timeout: float = None,
) -> TranscriptionSummary:
    """Operator batch transcription into the ledger.

    Refunded, failed and keyless rows are skipped and reported by reason.
    Mirror sync runs after the ledger lock is released.
    """
    with guard.hold(lock_timeout):
        result = ledger.append_batch(rows)

    synced = failed = 0
    if mirror is not None and result.records:
        sync_summary = mirror.sync_rows(result.records)
        synced, failed = sync_summary.synced, sync_summary.failed

    skipped_by_reason = {reason.value: result.skipped.get(reason.value, 0) for reason in SkipReason}
    summary = TranscriptionSummary(
        total_received=len(rows),
        appended=result.appended,
        merged=result.merged,
        skipped=result.skipped_total,
        skipped_by_reason=skipped_by_reason,
        mirror_synced=synced,
        mirror_failed=failed,
    )
    logger.info(
        f"Transcribed {summary.total_received} rows into {ledger.sheet.name!r}: "
        f"appended={summary.appended} merged={summary.merged} skipped={summary.skipped} {skipped_by_reason}"
    )
    return summary
