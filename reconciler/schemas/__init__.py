from .events import (
    EventKind,
    MergePatientsEvent,
    PaymentCompletedEvent,
    PaymentStatusEvent,
    RefundEvent,
)
from .ledger import (
    IndexRebuildResponse,
    IndexReport,
    LedgerRow,
    MergePatientsRequest,
    MergePatientsResponse,
    MirrorSyncSummary,
    TranscriptionRequest,
    TranscriptionSummary,
)

__all__ = [
    "EventKind",
    "MergePatientsEvent",
    "PaymentCompletedEvent",
    "PaymentStatusEvent",
    "RefundEvent",
    "IndexRebuildResponse",
    "IndexReport",
    "LedgerRow",
    "MergePatientsRequest",
    "MergePatientsResponse",
    "MirrorSyncSummary",
    "TranscriptionRequest",
    "TranscriptionSummary",
]
