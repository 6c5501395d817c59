from .guard import ConcurrencyGuard, LedgerLockTimeout
from .ledger import LedgerStore
from .index import IdentityIndex, PatientRowIndex
from .merge import IdentityMergeService
from .events import EventRouter
from .mirror import MirrorSync
from .notifier import CacheInvalidationNotifier

__all__ = [
    "ConcurrencyGuard",
    "LedgerLockTimeout",
    "LedgerStore",
    "IdentityIndex",
    "PatientRowIndex",
    "IdentityMergeService",
    "EventRouter",
    "MirrorSync",
    "CacheInvalidationNotifier",
]
