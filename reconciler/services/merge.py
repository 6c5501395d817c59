import logging
from dataclasses import dataclass, field
from typing import Dict, List

from .guard import ConcurrencyGuard
from .ledger import LedgerStore

logger = logging.getLogger(__name__)


class MergeError(Exception):
    code = "merge_failed"


class MergeValidationError(MergeError):
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


@dataclass
class MergeResult:
    old_patient_id: str
    new_patient_id: str
    updated: int
    records: List[Dict[str, str]] = field(default_factory=list)


def validate_merge(old_patient_id: str, new_patient_id: str) -> None:
    if not old_patient_id or not new_patient_id:
        raise MergeValidationError(
            "patient_ids_required",
            "Both old_patient_id and new_patient_id are required.",
        )
    if old_patient_id == new_patient_id:
        raise MergeValidationError(
            "same_patient_id",
            f"old_patient_id and new_patient_id are both '{old_patient_id}'.",
        )


class IdentityMergeService:
    """Reassign patient_id across the whole ledger.

    The merge holds the ledger's guard for its full duration, so concurrent
    webhook events wait (bounded) or are dropped for a retry instead of
    writing rows the scan already passed.
    """

    def __init__(self, ledger: LedgerStore, guard: ConcurrencyGuard, lock_timeout_seconds: float = 30.0):
        self.ledger = ledger
        self.guard = guard
        self.lock_timeout_seconds = lock_timeout_seconds

    def merge(self, old_patient_id: str, new_patient_id: str) -> MergeResult:
        old_patient_id = (old_patient_id or "").strip()
        new_patient_id = (new_patient_id or "").strip()
        validate_merge(old_patient_id, new_patient_id)

        with self.guard.hold(self.lock_timeout_seconds):
            records = self.ledger.reassign_patient(old_patient_id, new_patient_id)
            if records and self.ledger.patient_index is not None:
                self.ledger.patient_index.merge(old_patient_id, new_patient_id)

        logger.info(f"Merged patient {old_patient_id} -> {new_patient_id}: {len(records)} rows updated")
        return MergeResult(
            old_patient_id=old_patient_id,
            new_patient_id=new_patient_id,
            updated=len(records),
            records=records,
        )
