"""Per-ledger mutual exclusion.

One guard is owned by each ledger instance. Every read-modify-write cycle
against the ledger (and its indexes) happens while the guard is held;
separate ledger instances never share a guard and run fully in parallel.
"""
import logging
import time
from contextlib import contextmanager
from threading import Lock
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class LedgerLockTimeout(Exception):
    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"Could not acquire ledger lock {name!r} within {timeout:.1f}s")


class ConcurrencyGuard:
    """
    Bounded-wait lock scoped to a single ledger.

    Acquisition never blocks longer than the timeout; callers that fail to
    acquire are expected to drop the work and rely on the sender retrying.
    """

    def __init__(self, name: str, timeout_seconds: float = 8.0):
        """
        Initialize guard.

        Args:
            name: Ledger name, used in log lines
            timeout_seconds: Default bound on lock acquisition
        """
        self.name = name
        self.timeout_seconds = timeout_seconds
        self._lock = Lock()

    @contextmanager
    def hold(self, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the lock for the duration of the ``with`` block.

        Args:
            timeout: Seconds to wait; defaults to the guard's timeout

        Raises:
            LedgerLockTimeout: If the lock is not acquired in time
        """
        wait = self.timeout_seconds if timeout is None else timeout
        started = time.monotonic()
        if not self._lock.acquire(timeout=wait):
            logger.warning(f"Ledger lock {self.name!r} not acquired within {wait:.1f}s")
            raise LedgerLockTimeout(self.name, wait)

        waited = time.monotonic() - started
        if waited > 1.0:
            logger.info(f"Ledger lock {self.name!r} acquired after {waited:.2f}s")
        try:
            yield
        finally:
            self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()
