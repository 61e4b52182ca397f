"""Per-record single-writer queue.

Every engine-originated write to a record goes through the record's asyncio
lock, so a reconciliation pass's persistence write is serialized behind the
user write that triggered it instead of racing it.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from tenant_sync.services.reentrancy_guard import ReentrancyGuard

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecordWriteQueue:

    def __init__(self, guard: Optional[ReentrancyGuard] = None):
        self.guard = guard
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, int] = defaultdict(int)
        self._final_pending: Dict[str, int] = defaultdict(int)

    def _lock_for(self, record_key: str) -> asyncio.Lock:
        lock = self._locks.get(record_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[record_key] = lock
        return lock

    async def run(self, record_key: str, write: Callable[[], Awaitable[T]], final: bool = False) -> T:
        """
        Run a write for a record once every earlier write for it has finished.

        Args:
            record_key: Namespaced record identity
            write: Zero-argument coroutine factory performing the write
            final: Marks the write as a pass's final persistence write; the
                   reentrancy guard rejects new passes on the record until it lands
        """
        self._pending[record_key] += 1
        if final:
            self._final_pending[record_key] += 1
            if self.guard:
                self.guard.mark_final_write_pending(record_key)
        try:
            async with self._lock_for(record_key):
                return await write()
        finally:
            self._pending[record_key] -= 1
            if self._pending[record_key] <= 0:
                del self._pending[record_key]
                self._locks.pop(record_key, None)
            if final:
                self._final_pending[record_key] -= 1
                if self._final_pending[record_key] <= 0:
                    del self._final_pending[record_key]
                    if self.guard:
                        self.guard.clear_final_write(record_key)

    def is_pending(self, record_key: str) -> bool:
        return self._pending.get(record_key, 0) > 0
