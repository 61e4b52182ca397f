"""
Reentrancy Guard

Prevents concurrent or recursive reconciliation passes on the same record.

A record can be guarded at several levels, each backed by a self-expiring
entry in the injected LockStore:
- document lock: one reconciliation pass per record at a time
- operation lock: one pass per (record, operation kind) pair
- rapid-update marker: rejects a new pass within a short window of the last one
- final-write flag: set while the persistence write of a pass is in flight

Rejected triggers are dropped, not queued; convergence relies on the next
periodic or explicit resync.
"""
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Optional

from tenant_sync.core.config import settings
from tenant_sync.core.exceptions import ReconciliationInProgress
from tenant_sync.services.ttl_store import LockStore, InMemoryLockStore

logger = logging.getLogger(__name__)


class LockKind(str, Enum):
    DOCUMENT = "document"
    OPERATION = "operation"
    RAPID_UPDATE = "rapid_update"
    FINAL_WRITE = "final_write"


class ReentrancyGuard:
    """Keyed, TTL'd locks for reconciliation passes."""

    def __init__(
        self,
        lock_store: LockStore = None,
        lock_ttl: float = None,
        rapid_update_window: float = None
    ):
        self.lock_store = lock_store if lock_store is not None else InMemoryLockStore()
        self.lock_ttl = lock_ttl or settings.LOCK_TTL_SECONDS
        self.rapid_update_window = (
            settings.RAPID_UPDATE_WINDOW_SECONDS if rapid_update_window is None else rapid_update_window
        )

    @staticmethod
    def lock_key(record_key: str, kind: LockKind, operation: Optional[str] = None) -> str:
        if kind == LockKind.OPERATION:
            return f"{kind.value}:{operation or 'default'}:{record_key}"
        return f"{kind.value}:{record_key}"

    def try_acquire(self, record_key: str, kind: LockKind, operation: Optional[str] = None) -> bool:
        acquired = self.lock_store.try_acquire(self.lock_key(record_key, kind, operation), self.lock_ttl)
        if not acquired:
            logger.info(f"{kind.value} lock already held for {record_key} (operation={operation})")
        return acquired

    def release(self, record_key: str, kind: LockKind, operation: Optional[str] = None) -> None:
        self.lock_store.release(self.lock_key(record_key, kind, operation))

    def is_rapid_update(self, record_key: str) -> bool:
        """
        Check and refresh the rapid-update marker.

        Returns True if a pass for the record started within the debounce
        window. Otherwise starts a new window and returns False.
        """
        if self.rapid_update_window <= 0:
            return False
        key = self.lock_key(record_key, LockKind.RAPID_UPDATE)
        return not self.lock_store.try_acquire(key, self.rapid_update_window)

    def mark_final_write_pending(self, record_key: str) -> None:
        self.lock_store.set(self.lock_key(record_key, LockKind.FINAL_WRITE), True, self.lock_ttl)

    def clear_final_write(self, record_key: str) -> None:
        self.lock_store.release(self.lock_key(record_key, LockKind.FINAL_WRITE))

    def is_final_write_pending(self, record_key: str) -> bool:
        return bool(self.lock_store.get(self.lock_key(record_key, LockKind.FINAL_WRITE)))

    @asynccontextmanager
    async def reconciliation_pass(
        self,
        record_key: str,
        operation: str,
        debounce: bool = True
    ) -> AsyncIterator[None]:
        """
        Hold the document and operation locks for one reconciliation pass.

        Args:
            record_key: Namespaced record identity, e.g. "tenant:<id>"
            operation: Operation kind, e.g. "create", "update", "sync"
            debounce: Apply the rapid-update window; user edits pass False

        Raises:
            ReconciliationInProgress: If a final write is pending, the record
                                      was reconciled within the debounce window,
                                      or another pass holds either lock
        """
        if self.is_final_write_pending(record_key):
            raise ReconciliationInProgress(record_key, "final update pending", operation=operation)
        if not self.try_acquire(record_key, LockKind.DOCUMENT):
            raise ReconciliationInProgress(record_key, "another pass is running", operation=operation)
        if not self.try_acquire(record_key, LockKind.OPERATION, operation):
            self.release(record_key, LockKind.DOCUMENT)
            raise ReconciliationInProgress(record_key, f"{operation} already in progress", operation=operation)
        if debounce and self.is_rapid_update(record_key):
            self.release(record_key, LockKind.OPERATION, operation)
            self.release(record_key, LockKind.DOCUMENT)
            raise ReconciliationInProgress(record_key, "rapid update", operation=operation)

        logger.debug(f"Reconciliation pass started for {record_key} ({operation})")
        try:
            yield
        finally:
            self.release(record_key, LockKind.OPERATION, operation)
            self.release(record_key, LockKind.DOCUMENT)
